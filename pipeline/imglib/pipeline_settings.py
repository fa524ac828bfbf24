import os
from dataclasses import dataclass

import yaml


BACKUP_COLLISION_POLICIES = ("suffix", "skip", "fail")


#============================================
@dataclass(frozen=True)
class ArchiveConfig:
	"""
	Resolved filesystem roots and tuning values shared by every component.
	"""
	upload_root: str
	posts_root: str
	docs_root: str
	backup_root: str
	archive_root: str
	archive_path: str
	template_path: str
	placeholder_filename: str = ".gitkeep"
	template_placeholder: str = "IMAGEINFO_IMAGEINFO"
	name_pattern: str = "{year}-{month}-{day}-{filename}"
	delete_delay_seconds: float = 0.2
	upload_concurrency: int = 4
	verify_remote: bool = True
	remote_max_results: int = 500
	sample_prefix: str = "samples/"
	backup_collision: str = "suffix"


#============================================
def get_repo_root() -> str:
	"""
	Return repository root based on this module location.
	"""
	module_dir = os.path.dirname(os.path.abspath(__file__))
	pipeline_dir = os.path.dirname(module_dir)
	repo_root = os.path.dirname(pipeline_dir)
	return repo_root


#============================================
def resolve_settings_path(path_text: str) -> str:
	"""
	Resolve settings path against cwd first, then repo root.
	"""
	if os.path.isabs(path_text):
		return path_text
	cwd_candidate = os.path.abspath(path_text)
	if os.path.isfile(cwd_candidate):
		return cwd_candidate
	repo_root = get_repo_root()
	repo_candidate = os.path.join(repo_root, path_text)
	return os.path.abspath(repo_candidate)


#============================================
def load_settings(path_text: str) -> tuple[dict, str]:
	"""
	Load YAML settings dict and return it with resolved path.
	"""
	resolved_path = resolve_settings_path(path_text)
	if not os.path.isfile(resolved_path):
		return {}, resolved_path
	with open(resolved_path, "r", encoding="utf-8") as handle:
		data = yaml.safe_load(handle.read())
	if data is None:
		return {}, resolved_path
	if not isinstance(data, dict):
		raise RuntimeError(f"Settings file must contain a mapping: {resolved_path}")
	return data, resolved_path


#============================================
def get_nested_value(settings: dict, keys: list[str], default_value):
	"""
	Read nested mapping value by key path.
	"""
	current = settings
	for key in keys:
		if not isinstance(current, dict):
			return default_value
		if key not in current:
			return default_value
		current = current[key]
	return current


#============================================
def get_setting_str(settings: dict, keys: list[str], default_value: str) -> str:
	"""
	Read a string setting from nested path with fallback.
	"""
	value = get_nested_value(settings, keys, default_value)
	if value is None:
		return default_value
	return str(value).strip()


#============================================
def get_setting_int(settings: dict, keys: list[str], default_value: int) -> int:
	"""
	Read an integer setting from nested path with fallback.
	"""
	value = get_nested_value(settings, keys, default_value)
	if value is None:
		return default_value
	try:
		return int(value)
	except ValueError as error:
		raise RuntimeError(f"Invalid integer for setting path {'.'.join(keys)}: {value}") from error


#============================================
def get_setting_float(settings: dict, keys: list[str], default_value: float) -> float:
	"""
	Read a float setting from nested path with fallback.
	"""
	value = get_nested_value(settings, keys, default_value)
	if value is None:
		return default_value
	try:
		return float(value)
	except (TypeError, ValueError) as error:
		raise RuntimeError(f"Invalid number for setting path {'.'.join(keys)}: {value}") from error


#============================================
def get_setting_bool(settings: dict, keys: list[str], default_value: bool) -> bool:
	"""
	Read a boolean setting from nested path with fallback.
	"""
	value = get_nested_value(settings, keys, default_value)
	if isinstance(value, bool):
		return value
	if isinstance(value, str):
		text = value.strip().lower()
		if text in {"1", "true", "yes", "on"}:
			return True
		if text in {"0", "false", "no", "off"}:
			return False
		raise RuntimeError(f"Invalid boolean for setting path {'.'.join(keys)}: {value}")
	if isinstance(value, int):
		return value != 0
	if value is None:
		return default_value
	raise RuntimeError(f"Invalid boolean for setting path {'.'.join(keys)}: {value}")


#============================================
def resolve_path_setting(settings: dict, keys: list[str], default_value: str, base_dir: str) -> str:
	"""
	Read a path setting and anchor relative values at base_dir.
	"""
	path_text = get_setting_str(settings, keys, default_value) or default_value
	path_text = os.path.expanduser(path_text)
	if os.path.isabs(path_text):
		return os.path.normpath(path_text)
	return os.path.normpath(os.path.join(base_dir, path_text))


#============================================
def build_archive_config(settings: dict, base_dir: str | None = None) -> ArchiveConfig:
	"""
	Build the archive configuration from settings with defaults.

	Relative paths resolve against base_dir (cwd when omitted), except the
	doc template which falls back to the repo copy when not found there.
	"""
	if base_dir is None:
		base_dir = os.getcwd()
	base_dir = os.path.abspath(base_dir)

	template_path = resolve_path_setting(
		settings,
		["paths", "template_path"],
		os.path.join("pipeline", "templates", "doc_template.md"),
		base_dir,
	)
	if not os.path.isfile(template_path):
		repo_template = resolve_path_setting(
			settings,
			["paths", "template_path"],
			os.path.join("pipeline", "templates", "doc_template.md"),
			get_repo_root(),
		)
		if os.path.isfile(repo_template):
			template_path = repo_template

	concurrency = get_setting_int(settings, ["upload", "concurrency"], 4)
	if concurrency < 1:
		raise RuntimeError(f"upload.concurrency must be >= 1; got {concurrency}")
	delay_seconds = get_setting_float(settings, ["delete", "delay_seconds"], 0.2)
	if delay_seconds < 0:
		raise RuntimeError(f"delete.delay_seconds must be >= 0; got {delay_seconds}")
	max_results = get_setting_int(settings, ["remote", "max_results"], 500)
	if not 1 <= max_results <= 500:
		raise RuntimeError(f"remote.max_results must be within 1-500; got {max_results}")
	collision = get_setting_str(settings, ["refresh", "backup_collision"], "suffix").lower()
	if collision not in BACKUP_COLLISION_POLICIES:
		raise RuntimeError(
			"refresh.backup_collision must be one of "
			+ f"{', '.join(BACKUP_COLLISION_POLICIES)}; got {collision}"
		)

	config = ArchiveConfig(
		upload_root=resolve_path_setting(settings, ["paths", "upload_root"], "upload", base_dir),
		posts_root=resolve_path_setting(
			settings,
			["paths", "posts_root"],
			os.path.join("content", "posts"),
			base_dir,
		),
		docs_root=resolve_path_setting(settings, ["paths", "docs_root"], "docs", base_dir),
		backup_root=resolve_path_setting(settings, ["paths", "backup_root"], "backup", base_dir),
		archive_root=resolve_path_setting(settings, ["paths", "archive_root"], "archive", base_dir),
		archive_path=resolve_path_setting(
			settings,
			["paths", "archive_path"],
			"uploaded.json",
			base_dir,
		),
		template_path=template_path,
		placeholder_filename=get_setting_str(
			settings,
			["upload", "placeholder_filename"],
			".gitkeep",
		),
		template_placeholder=get_setting_str(
			settings,
			["docs", "placeholder"],
			"IMAGEINFO_IMAGEINFO",
		),
		name_pattern=get_setting_str(
			settings,
			["docs", "name_pattern"],
			"{year}-{month}-{day}-{filename}",
		),
		delete_delay_seconds=delay_seconds,
		upload_concurrency=concurrency,
		verify_remote=get_setting_bool(settings, ["upload", "verify_remote"], True),
		remote_max_results=max_results,
		sample_prefix=get_setting_str(settings, ["remote", "sample_prefix"], "samples/"),
		backup_collision=collision,
	)
	return config


#============================================
def get_cloud_credentials(settings: dict) -> dict:
	"""
	Resolve Cloudinary credentials from settings, then environment.
	"""
	env_names = {
		"cloud_name": "CLOUD_NAME",
		"api_key": "API_KEY",
		"api_secret": "API_SECRET",
	}
	credentials = {}
	for key, env_name in env_names.items():
		value = get_setting_str(settings, ["cloudinary", key], "")
		if not value:
			value = os.environ.get(env_name, "").strip()
		credentials[key] = value
	return credentials
