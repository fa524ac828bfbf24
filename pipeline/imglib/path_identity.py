"""Asset identity derivation from upload paths.

An identity is the upload-relative path without its extension, always
joined with forward slashes, e.g. upload/2024/3/4/dog.jpg -> 2024/3/4/dog.
"""

# Standard Library
import os
import re
import string
from typing import NamedTuple


DATED_IDENTITY_RE = re.compile(r"^(\d{4})/(\d{1,2})/(\d{1,2})/(.+)$")
NAME_PATTERN_TOKENS = ("year", "month", "day", "month02", "day02", "filename")


#============================================
class InvalidPath(RuntimeError):
	"""
	Raised when a path does not live under the upload root.
	"""


#============================================
class MalformedIdentity(RuntimeError):
	"""
	Raised when an identity does not follow YYYY/M/D/filename.
	"""


#============================================
class DatedIdentity(NamedTuple):
	year: str
	month: str
	day: str
	filename: str


#============================================
def derive_identity(path: str, upload_root: str) -> str:
	"""Derive the asset identity for one file under the upload root.

	Args:
		path: File path, absolute or relative to cwd.
		upload_root: Root directory the identity is made relative to.

	Returns:
		Root-relative path with '/' separators and the final extension removed.

	Raises:
		InvalidPath: path is the root itself or lies outside of it.
	"""
	root_abs = os.path.abspath(upload_root)
	path_abs = os.path.abspath(path)
	try:
		common = os.path.commonpath([root_abs, path_abs])
	except ValueError as error:
		# different drives on Windows
		raise InvalidPath(f"Path is not under upload root {root_abs}: {path}") from error
	if common != root_abs or path_abs == root_abs:
		raise InvalidPath(f"Path is not under upload root {root_abs}: {path}")
	relative = os.path.relpath(path_abs, root_abs)
	parts = relative.split(os.sep)
	stem, _ = os.path.splitext(parts[-1])
	if not stem:
		raise InvalidPath(f"Path has no usable file name: {path}")
	parts[-1] = stem
	return "/".join(parts)


#============================================
def parse_dated_identity(identity: str) -> DatedIdentity:
	"""
	Split a YYYY/M/D/filename identity into its components.
	"""
	match = DATED_IDENTITY_RE.match(identity or "")
	if match is None:
		raise MalformedIdentity(f"Identity is not YYYY/M/D/filename: {identity!r}")
	year, month, day, filename = match.groups()
	return DatedIdentity(year=year, month=month, day=day, filename=filename)


#============================================
def validate_name_pattern(pattern: str) -> None:
	"""
	Raise ValueError when pattern uses tokens outside NAME_PATTERN_TOKENS.
	"""
	for _, field_name, _, _ in string.Formatter().parse(pattern):
		if field_name is None:
			continue
		if field_name not in NAME_PATTERN_TOKENS:
			raise ValueError(
				f"Unknown name pattern token {{{field_name}}}; "
				+ f"allowed: {', '.join(NAME_PATTERN_TOKENS)}"
			)


#============================================
def format_dated_name(identity: str, pattern: str = "{year}-{month}-{day}-{filename}") -> str:
	"""
	Render a flat, date-qualified file name for one identity.
	"""
	validate_name_pattern(pattern)
	dated = parse_dated_identity(identity)
	values = {
		"year": dated.year,
		"month": dated.month,
		"day": dated.day,
		"month02": f"{int(dated.month):02d}",
		"day02": f"{int(dated.day):02d}",
		"filename": dated.filename,
	}
	name = pattern.format(**values)
	# nested folders below the day level must not create subdirectories
	return name.replace("/", "-")
