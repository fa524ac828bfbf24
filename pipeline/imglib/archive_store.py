"""Local JSON ledger of uploaded and destroyed assets.

The ledger file keeps the layout written by earlier revisions of the tool:

	{"uploaded": [{"publicId", "url", "originalFilename", "result"}, ...],
	 "destroyed": [...]}

Missing optional fields default on load and unknown keys are carried
through to the next save.
"""

# Standard Library
import json
import os
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime


RECORD_KEYS = ("publicId", "url", "originalFilename", "result")
PARTITION_KEYS = ("uploaded", "destroyed")


#============================================
class CorruptArchive(RuntimeError):
	"""
	Raised when the ledger file cannot be parsed into an archive.
	"""


#============================================
class ArchiveMissing(CorruptArchive):
	"""
	Raised when the ledger file does not exist.
	"""


#============================================
class DuplicateIdentity(RuntimeError):
	"""
	Raised when an identity is already live in the uploaded partition.
	"""


#============================================
class NotFound(RuntimeError):
	"""
	Raised when an identity is absent from the uploaded partition.
	"""


#============================================
class BackupCollision(RuntimeError):
	"""
	Raised when a backup with the same label already exists.
	"""


#============================================
@dataclass(frozen=True)
class AssetRecord:
	"""
	One uploaded asset as stored in the ledger.
	"""
	identity: str
	remote_url: str = ""
	original_filename: str = ""
	remote_metadata: dict = field(default_factory=dict)
	extra: dict = field(default_factory=dict)

	#============================================
	def to_dict(self) -> dict:
		payload = dict(self.extra)
		payload["publicId"] = self.identity
		payload["url"] = self.remote_url
		payload["originalFilename"] = self.original_filename
		payload["result"] = self.remote_metadata
		return payload

	#============================================
	@classmethod
	def from_dict(cls, payload: dict) -> "AssetRecord":
		"""
		Build a record from one ledger entry, defaulting missing fields.
		"""
		if not isinstance(payload, dict):
			raise CorruptArchive(f"Archive entry must be an object: {payload!r}")
		identity = payload.get("publicId")
		if not isinstance(identity, str) or not identity:
			raise CorruptArchive(f"Archive entry has no publicId: {payload!r}")
		metadata = payload.get("result")
		if metadata is None:
			metadata = {}
		extra = {key: value for key, value in payload.items() if key not in RECORD_KEYS}
		return cls(
			identity=identity,
			remote_url=str(payload.get("url") or ""),
			original_filename=str(payload.get("originalFilename") or ""),
			remote_metadata=metadata,
			extra=extra,
		)


#============================================
@dataclass
class Archive:
	"""
	In-memory copy of the ledger; mutate only through the module helpers.
	"""
	uploaded: list = field(default_factory=list)
	destroyed: list = field(default_factory=list)
	extra: dict = field(default_factory=dict)

	#============================================
	def to_dict(self) -> dict:
		payload = dict(self.extra)
		payload["uploaded"] = [record.to_dict() for record in self.uploaded]
		payload["destroyed"] = [record.to_dict() for record in self.destroyed]
		return payload

	#============================================
	@classmethod
	def from_dict(cls, payload) -> "Archive":
		if not isinstance(payload, dict):
			raise CorruptArchive("Archive root must be a JSON object.")
		partitions = {}
		for key in PARTITION_KEYS:
			entries = payload.get(key)
			if entries is None:
				entries = []
			if not isinstance(entries, list):
				raise CorruptArchive(f"Archive field '{key}' must be a list.")
			partitions[key] = [AssetRecord.from_dict(entry) for entry in entries]
		seen = set()
		for record in partitions["uploaded"]:
			if record.identity in seen:
				raise CorruptArchive(f"Archive lists '{record.identity}' twice in uploaded.")
			seen.add(record.identity)
		extra = {key: value for key, value in payload.items() if key not in PARTITION_KEYS}
		return cls(
			uploaded=partitions["uploaded"],
			destroyed=partitions["destroyed"],
			extra=extra,
		)


#============================================
def date_stamp(now: datetime | None = None) -> str:
	"""
	Return the local YYYYMMDD stamp used for backups, listings, and docs.
	"""
	if now is None:
		now = datetime.now()
	return now.strftime("%Y%m%d")


#============================================
def dump_json(payload) -> str:
	return json.dumps(payload, ensure_ascii=False, indent=2) + "\n"


#============================================
def atomic_write_text(path: str, text: str) -> None:
	"""
	Write text to a sibling temp file, fsync, then swap it into place.
	"""
	directory = os.path.dirname(os.path.abspath(path))
	os.makedirs(directory, exist_ok=True)
	tmp_path = f"{path}.tmp"
	with open(tmp_path, "w", encoding="utf-8") as handle:
		handle.write(text)
		handle.flush()
		os.fsync(handle.fileno())
	os.replace(tmp_path, path)


#============================================
def find_by_identity(archive: Archive, identity: str) -> AssetRecord | None:
	"""
	Look up a live record; destroyed history is not searched.
	"""
	for record in archive.uploaded:
		if record.identity == identity:
			return record
	return None


#============================================
def find_destroyed(archive: Archive, identity: str) -> list[AssetRecord]:
	"""
	Return every destroyed record for identity, oldest first.
	"""
	return [record for record in archive.destroyed if record.identity == identity]


#============================================
def uploaded_identities(archive: Archive) -> set[str]:
	return {record.identity for record in archive.uploaded}


#============================================
def append(archive: Archive, record: AssetRecord) -> None:
	"""
	Add a live record; the uploaded partition never holds an identity twice.
	"""
	if find_by_identity(archive, record.identity) is not None:
		raise DuplicateIdentity(f"Identity already uploaded: {record.identity}")
	archive.uploaded.append(record)


#============================================
def move_to_destroyed(archive: Archive, identity: str) -> AssetRecord:
	"""
	Move the live record for identity into destroyed and return it.
	"""
	record = find_by_identity(archive, identity)
	if record is None:
		raise NotFound(f"Identity not in uploaded: {identity}")
	archive.uploaded = [item for item in archive.uploaded if item.identity != identity]
	archive.destroyed.append(record)
	return record


#============================================
def prune_destroyed(archive: Archive) -> int:
	"""Forget destroyed history whose identity is no longer live.

	A destroyed entry survives only while the same identity is live again in
	uploaded (re-uploaded after destruction), so that history stays next to
	the replacement. Everything else has fully taken effect and is dropped.

	This relaxes "never in both partitions" for re-uploads only: the identity is
	live once in uploaded and may also appear in destroyed. Do not invert the
	predicate.

	Args:
		archive: In-memory archive, mutated in place.

	Returns:
		Number of destroyed entries removed.
	"""
	live = uploaded_identities(archive)
	kept = [record for record in archive.destroyed if record.identity in live]
	removed = len(archive.destroyed) - len(kept)
	archive.destroyed = kept
	return removed


#============================================
class ArchiveStore:
	"""
	Filesystem owner of the ledger file and its backups.
	"""

	def __init__(self, archive_path: str, backup_root: str):
		self.archive_path = os.path.abspath(archive_path)
		self.backup_root = os.path.abspath(backup_root)

	#============================================
	def exists(self) -> bool:
		return os.path.isfile(self.archive_path)

	#============================================
	def load(self) -> Archive:
		"""
		Read the full ledger; never fabricate an empty one.
		"""
		if not self.exists():
			raise ArchiveMissing(
				f"Archive file not found: {self.archive_path} "
				+ "(run with --init to create an empty archive)"
			)
		try:
			with open(self.archive_path, "r", encoding="utf-8") as handle:
				payload = json.load(handle)
		except json.JSONDecodeError as error:
			raise CorruptArchive(f"Invalid JSON in archive {self.archive_path}: {error}") from error
		except UnicodeDecodeError as error:
			raise CorruptArchive(f"Archive is not UTF-8 text: {self.archive_path}") from error
		return Archive.from_dict(payload)

	#============================================
	def save(self, archive: Archive) -> str:
		atomic_write_text(self.archive_path, dump_json(archive.to_dict()))
		return self.archive_path

	#============================================
	def initialize(self) -> str:
		"""
		Create an empty ledger; refuses to replace an existing one.
		"""
		if self.exists():
			raise RuntimeError(f"Archive already exists: {self.archive_path}")
		return self.save(Archive())

	#============================================
	def backup_path(self, label: str) -> str:
		return os.path.join(self.backup_root, f"{label}.json")

	#============================================
	def read_backup(self, label: str) -> dict | None:
		"""
		Return the raw payload of one backup, or None when it does not exist.
		"""
		path = self.backup_path(label)
		if not os.path.isfile(path):
			return None
		try:
			with open(path, "r", encoding="utf-8") as handle:
				return json.load(handle)
		except json.JSONDecodeError as error:
			raise CorruptArchive(f"Invalid JSON in backup {path}: {error}") from error

	#============================================
	def backup(self, archive: Archive, label: str) -> str:
		"""
		Write an immutable snapshot named by label and return its path.
		"""
		if not label or "/" in label or os.sep in label:
			raise ValueError(f"Invalid backup label: {label!r}")
		os.makedirs(self.backup_root, exist_ok=True)
		path = self.backup_path(label)
		try:
			# exclusive create keeps an existing snapshot untouched
			with open(path, "x", encoding="utf-8") as handle:
				handle.write(dump_json(archive.to_dict()))
				handle.flush()
				os.fsync(handle.fileno())
		except FileExistsError as error:
			raise BackupCollision(f"Backup already exists: {path}") from error
		return path
