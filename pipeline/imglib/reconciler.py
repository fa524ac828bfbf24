"""Reconcile the local upload tree, the archive ledger, and the remote store.

Every operation loads the full archive once, mutates the in-memory copy,
and writes it back through ArchiveStore. Upload-all is the only operation
that runs gateway calls concurrently; archive appends still happen one at
a time on the event loop thread.
"""

# Standard Library
import asyncio
import json
import mimetypes
import os
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime

from imglib import archive_store
from imglib import path_identity
from imglib import post_dates
from imglib.cloud_client import GatewayError


DESTROY_OK_STATUSES = {"ok", "not found"}


#============================================
@dataclass
class BatchReport:
	"""
	Per-item outcome of one batch operation.
	"""
	operation: str
	succeeded: list = field(default_factory=list)
	skipped: list = field(default_factory=list)
	failed: list = field(default_factory=list)

	#============================================
	def exit_ok(self) -> bool:
		"""
		A batch only fails as a whole when items failed and none succeeded.
		"""
		return not (self.failed and not self.succeeded)

	#============================================
	def summary(self) -> str:
		return (
			f"{self.operation}: succeeded={len(self.succeeded)}, "
			+ f"skipped={len(self.skipped)}, failed={len(self.failed)}"
		)


#============================================
@dataclass
class RefreshReport:
	backup_path: str | None
	pruned: int
	uploaded_count: int
	destroyed_count: int


#============================================
@dataclass
class ReconcileReport:
	refresh: RefreshReport
	remote_count: int
	pending_files: list = field(default_factory=list)
	unverified_records: list = field(default_factory=list)
	untracked_remote: list = field(default_factory=list)


#============================================
def classify_content_type(path: str) -> str:
	"""
	Guess the MIME type for one file; empty string when unknown.
	"""
	mime_type, _ = mimetypes.guess_type(path)
	return mime_type or ""


#============================================
def is_image_path(path: str) -> bool:
	primary = classify_content_type(path).split("/", 1)[0]
	return primary == "image"


#============================================
class Reconciler:
	"""
	Drives upload, delete, refresh, and divergence checks for one archive.
	"""

	def __init__(self, config, store: archive_store.ArchiveStore, gateway=None, log_fn=None):
		self.config = config
		self.store = store
		self.gateway = gateway
		self.log_fn = log_fn

	#============================================
	def log(self, message: str) -> None:
		"""
		Emit one log line when logger is configured.
		"""
		if self.log_fn is not None:
			self.log_fn(message)

	#============================================
	def require_gateway(self):
		if self.gateway is None:
			raise RuntimeError("This operation needs a remote gateway; none was configured.")
		return self.gateway

	#============================================
	def list_upload_files(self) -> list[str]:
		"""
		List every regular file under the upload root except placeholders.
		"""
		upload_root = self.config.upload_root
		if not os.path.isdir(upload_root):
			raise FileNotFoundError(f"Upload directory not found: {upload_root}")
		paths = []
		for dirpath, dirnames, filenames in os.walk(upload_root):
			dirnames.sort()
			for filename in sorted(filenames):
				if filename == self.config.placeholder_filename:
					continue
				path = os.path.join(dirpath, filename)
				if os.path.isfile(path):
					paths.append(os.path.abspath(path))
		return paths

	#============================================
	def record_from_upload(self, identity: str, path: str, response: dict) -> archive_store.AssetRecord:
		remote_id = response.get("public_id")
		if remote_id and remote_id != identity:
			self.log(f"Remote public id {remote_id} differs from requested {identity}; keeping requested.")
		return archive_store.AssetRecord(
			identity=identity,
			remote_url=str(response.get("secure_url") or response.get("url") or ""),
			original_filename=os.path.basename(path),
			remote_metadata=response,
		)

	#============================================
	def record_from_remote(self, resource: dict) -> archive_store.AssetRecord:
		"""
		Build a record for an asset discovered in the remote listing.
		"""
		identity = str(resource.get("public_id") or "")
		original_filename = str(resource.get("original_filename") or "")
		if not original_filename:
			original_filename = identity.rsplit("/", 1)[-1]
			if resource.get("format"):
				original_filename += f".{resource['format']}"
		return archive_store.AssetRecord(
			identity=identity,
			remote_url=str(resource.get("secure_url") or resource.get("url") or ""),
			original_filename=original_filename,
			remote_metadata=resource,
		)

	#============================================
	def list_remote_assets(self, max_results: int | None = None) -> list[archive_store.AssetRecord]:
		"""
		Fetch remote upload-type assets, excluding the sample namespace.
		"""
		gateway = self.require_gateway()
		if max_results is None:
			max_results = self.config.remote_max_results
		resources = gateway.list_resources(resource_type="upload", max_results=max_results)
		records = []
		for resource in resources:
			record = self.record_from_remote(resource)
			if not record.identity:
				continue
			if self.config.sample_prefix and record.identity.startswith(self.config.sample_prefix):
				continue
			records.append(record)
		return records

	#============================================
	def public_id_exists(self, identity: str, remote: list | None = None) -> bool:
		if remote is None:
			remote = self.list_remote_assets()
		return any(record.identity == identity for record in remote)

	#============================================
	async def upload_all(self) -> BatchReport:
		"""
		Upload every new image under the upload root and record it.
		"""
		gateway = self.require_gateway()
		report = BatchReport("upload-all")
		archive = self.store.load()
		remote_by_id = {}
		if self.config.verify_remote:
			remote_records = await asyncio.to_thread(self.list_remote_assets)
			remote_by_id = {record.identity: record for record in remote_records}
			self.log(f"Remote listing: {len(remote_by_id)} asset(s).")

		touched = []
		claimed = set()
		semaphore = asyncio.Semaphore(self.config.upload_concurrency)
		jobs = []
		for path in self.list_upload_files():
			if not is_image_path(path):
				self.log(f"Skipping non-image file: {path}")
				report.skipped.append((path, "not an image"))
				continue
			identity = path_identity.derive_identity(path, self.config.upload_root)
			if archive_store.find_by_identity(archive, identity) is not None:
				self.log(f"Image already uploaded: {identity}")
				report.skipped.append((identity, "already archived"))
				continue
			if identity in claimed:
				self.log(f"Skipping {path}: identity {identity} already queued in this batch.")
				report.skipped.append((identity, f"duplicate identity ({os.path.basename(path)})"))
				continue
			claimed.add(identity)
			remote_record = remote_by_id.get(identity)
			if remote_record is not None:
				# present remotely but missing from the ledger; adopt instead of re-uploading
				archive_store.append(archive, remote_record)
				touched.append(remote_record)
				report.succeeded.append(identity)
				self.log(f"Adopted existing remote asset: {identity}")
				continue
			jobs.append(
				self._upload_one(gateway, archive, identity, path, semaphore, report, touched)
			)

		results = []
		try:
			results = await asyncio.gather(*jobs, return_exceptions=True)
		finally:
			if touched:
				saved_path = self.store.save(archive)
				self.log(f"Wrote archive with {len(archive.uploaded)} uploaded record(s): {saved_path}")
				listing_path = self.write_run_listing(touched)
				self.log(f"Wrote run listing: {listing_path}")
		for result in results:
			if isinstance(result, Exception):
				raise result
		return report

	#============================================
	async def _upload_one(
		self,
		gateway,
		archive: archive_store.Archive,
		identity: str,
		path: str,
		semaphore: asyncio.Semaphore,
		report: BatchReport,
		touched: list,
	) -> None:
		async with semaphore:
			self.log(f"Uploading {identity} from {path}")
			try:
				response = await asyncio.to_thread(gateway.upload, path, identity)
			except GatewayError as error:
				self.log(f"Upload failed for {identity}: {error}")
				report.failed.append((identity, str(error)))
				return
		record = self.record_from_upload(identity, path, response)
		# no await between here and the append: the event loop serializes appends
		archive_store.append(archive, record)
		touched.append(record)
		report.succeeded.append(identity)
		self.log(f"Upload successful: {identity} -> {record.remote_url}")

	#============================================
	def write_run_listing(self, records: list, now: datetime | None = None) -> str:
		"""
		Write the dated listing of records touched in this run.

		A listing from an earlier run on the same day is merged by identity,
		newer records replacing older ones.
		"""
		os.makedirs(self.config.archive_root, exist_ok=True)
		path = os.path.join(self.config.archive_root, f"{archive_store.date_stamp(now)}.json")
		merged = {}
		if os.path.isfile(path):
			with open(path, "r", encoding="utf-8") as handle:
				try:
					previous = json.load(handle)
				except json.JSONDecodeError as error:
					raise archive_store.CorruptArchive(f"Invalid run listing {path}: {error}") from error
			if not isinstance(previous, list):
				raise archive_store.CorruptArchive(f"Run listing must be a JSON list: {path}")
			for entry in previous:
				record = archive_store.AssetRecord.from_dict(entry)
				merged[record.identity] = record
		for record in records:
			merged[record.identity] = record
		payload = [record.to_dict() for record in merged.values()]
		archive_store.atomic_write_text(path, archive_store.dump_json(payload))
		return path

	#============================================
	def generate_date_skeleton(self) -> list[str]:
		"""
		Create upload_root/Y/M/D plus a placeholder for every post date.
		"""
		created = []
		seen = set()
		for date_key, post_path in post_dates.read_post_dates(self.config.posts_root):
			if date_key in seen:
				continue
			seen.add(date_key)
			directory = post_dates.date_directory(self.config.upload_root, date_key)
			if not os.path.isdir(directory):
				os.makedirs(directory, exist_ok=True)
				created.append(directory)
				self.log(f"Created date directory {directory} for {os.path.basename(post_path)}")
			placeholder = os.path.join(directory, self.config.placeholder_filename)
			if not os.path.exists(placeholder):
				with open(placeholder, "w", encoding="utf-8"):
					pass
		return created

	#============================================
	async def delete_all(self) -> BatchReport:
		"""
		Destroy every uploaded asset, persisting after each successful move.
		"""
		gateway = self.require_gateway()
		archive = self.store.load()
		report = BatchReport("delete-all")
		identities = [record.identity for record in archive.uploaded]
		for index, identity in enumerate(identities):
			if index > 0 and self.config.delete_delay_seconds > 0:
				await asyncio.sleep(self.config.delete_delay_seconds)
			self.log(f"Deleting: {identity}")
			try:
				response = await asyncio.to_thread(gateway.destroy, identity)
			except GatewayError as error:
				self.log(f"Delete failed for {identity}: {error}")
				report.failed.append((identity, str(error)))
				continue
			status = str(response.get("result", "")).strip().lower()
			if status not in DESTROY_OK_STATUSES:
				self.log(f"Delete failed for {identity}: remote result {status or 'empty'}")
				report.failed.append((identity, f"remote result {status or 'empty'}"))
				continue
			archive_store.move_to_destroyed(archive, identity)
			self.store.save(archive)
			report.succeeded.append(identity)
			self.log(f"Delete result for {identity}: {status}")
		return report

	#============================================
	def backup_archive(self, archive: archive_store.Archive, now: datetime | None = None) -> str | None:
		"""
		Back up under today's label, applying the configured collision policy.
		"""
		label = archive_store.date_stamp(now)
		try:
			return self.store.backup(archive, label)
		except archive_store.BackupCollision:
			policy = self.config.backup_collision
			if policy == "fail":
				raise
			if policy == "skip":
				matching_path = self.find_matching_backup(archive, label)
				if matching_path:
					self.log(f"Backup {matching_path} already holds this archive; skipping new backup.")
					return None
				# prune only runs after a snapshot of the current content exists
				self.log(f"Backups for {label} differ from the current archive; writing a suffixed backup.")
		suffix = 2
		while True:
			try:
				return self.store.backup(archive, f"{label}-{suffix}")
			except archive_store.BackupCollision:
				suffix += 1

	#============================================
	def find_matching_backup(self, archive: archive_store.Archive, label: str) -> str | None:
		"""
		Return the same-day backup whose content equals archive, if any.
		"""
		current = archive.to_dict()
		candidates = [label]
		suffix = 2
		while os.path.isfile(self.store.backup_path(f"{label}-{suffix}")):
			candidates.append(f"{label}-{suffix}")
			suffix += 1
		for candidate in candidates:
			payload = self.store.read_backup(candidate)
			if payload == current:
				return self.store.backup_path(candidate)
		return None

	#============================================
	def refresh(self, now: datetime | None = None) -> RefreshReport:
		"""
		Back up the archive, then prune destroyed history that is no longer live.
		"""
		archive = self.store.load()
		backup_path = self.backup_archive(archive, now)
		if backup_path:
			self.log(f"Wrote backup: {backup_path}")
		pruned = archive_store.prune_destroyed(archive)
		self.store.save(archive)
		self.log(
			f"Refresh pruned {pruned} destroyed record(s); "
			+ f"uploaded={len(archive.uploaded)}, destroyed={len(archive.destroyed)}"
		)
		return RefreshReport(
			backup_path=backup_path,
			pruned=pruned,
			uploaded_count=len(archive.uploaded),
			destroyed_count=len(archive.destroyed),
		)

	#============================================
	def find_pending_files(self, archive: archive_store.Archive | None = None) -> list[tuple[str, str]]:
		"""
		Return (identity, path) for local images not yet in uploaded.
		"""
		if archive is None:
			archive = self.store.load()
		live = archive_store.uploaded_identities(archive)
		pending = []
		for path in self.list_upload_files():
			if not is_image_path(path):
				continue
			identity = path_identity.derive_identity(path, self.config.upload_root)
			if identity not in live:
				pending.append((identity, path))
		return pending

	#============================================
	def find_unverified_records(self, remote: list, archive: archive_store.Archive | None = None) -> list:
		"""
		Return uploaded records the remote listing does not confirm.
		"""
		if archive is None:
			archive = self.store.load()
		remote_ids = {record.identity for record in remote}
		return [record for record in archive.uploaded if record.identity not in remote_ids]

	#============================================
	def find_untracked_remote(self, remote: list, archive: archive_store.Archive | None = None) -> list:
		if archive is None:
			archive = self.store.load()
		live = archive_store.uploaded_identities(archive)
		return [record for record in remote if record.identity not in live]

	#============================================
	def self_test(self, now: datetime | None = None) -> ReconcileReport:
		"""
		Refresh, then compare local files, the ledger, and the remote listing.
		"""
		refresh_report = self.refresh(now)
		remote = self.list_remote_assets()
		archive = self.store.load()
		report = ReconcileReport(
			refresh=refresh_report,
			remote_count=len(remote),
			pending_files=self.find_pending_files(archive),
			unverified_records=self.find_unverified_records(remote, archive),
			untracked_remote=self.find_untracked_remote(remote, archive),
		)
		return report
