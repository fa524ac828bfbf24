import html
import json
import os
from datetime import datetime

from imglib import archive_store
from imglib import path_identity
from imglib import template_loader
from imglib.reconciler import BatchReport


#============================================
def build_image_html(url: str, original_filename: str, identity: str) -> str:
	"""
	Build the <img> fragment embedding one remote asset.
	"""
	alt_text = f"Cloudinary image<{original_filename}-{identity}>"
	return (
		f'<img src="{html.escape(url, quote=True)}" '
		+ f'alt="{html.escape(alt_text, quote=True)}" />'
	)


#============================================
def build_markdown_section(html_fragment: str, stamp: str) -> str:
	return f"## [{stamp}]\n\n```html\n{html_fragment}\n```"


#============================================
def footer_key(record: archive_store.AssetRecord) -> str:
	"""
	Return the footer suffix that marks record as already appended.
	"""
	etag = ""
	if isinstance(record.remote_metadata, dict):
		etag = str(record.remote_metadata.get("etag") or "")
	return f"||{etag}-{record.identity}"


#============================================
def build_footer(record: archive_store.AssetRecord, now: datetime) -> str:
	return f"### [{now.isoformat()}]{record.original_filename}{footer_key(record)}"


#============================================
class DocEmitter:
	"""
	Writes per-asset documentation files from archived records.
	"""

	def __init__(self, config, store: archive_store.ArchiveStore, gateway=None, log_fn=None):
		self.config = config
		self.store = store
		self.gateway = gateway
		self.log_fn = log_fn
		self._handled: set[tuple[str, str]] = set()

	#============================================
	def log(self, message: str) -> None:
		if self.log_fn is not None:
			self.log_fn(message)

	#============================================
	def resolve_url(self, record: archive_store.AssetRecord) -> str:
		if record.remote_url:
			return record.remote_url
		if self.gateway is None:
			raise RuntimeError(f"No remote URL recorded for {record.identity} and no gateway to build one.")
		return self.gateway.build_url(record.identity)

	#============================================
	def doc_paths(self, identity: str, stamp: str) -> tuple[str, str]:
		"""
		Return (markdown doc path, sibling html path) for one identity.
		"""
		name = path_identity.format_dated_name(identity, self.config.name_pattern)
		doc_dir = os.path.join(self.config.docs_root, stamp)
		return (
			os.path.join(doc_dir, f"{name}-doc.md"),
			os.path.join(doc_dir, f"{name}.html"),
		)

	#============================================
	def ensure_doc_file(self, doc_path: str, record: archive_store.AssetRecord) -> bool:
		"""
		Materialize doc_path from the template once; True when created.
		"""
		if os.path.isfile(doc_path):
			return False
		template = template_loader.load_template(self.config.template_path)
		record_json = json.dumps(record.to_dict(), ensure_ascii=False, indent=2)
		content = template_loader.render_template(
			template,
			self.config.template_placeholder,
			record_json,
		)
		os.makedirs(os.path.dirname(doc_path), exist_ok=True)
		with open(doc_path, "w", encoding="utf-8") as handle:
			handle.write(content)
		return True

	#============================================
	def emit_for_record(self, record: archive_store.AssetRecord, now: datetime | None = None) -> str | None:
		"""
		Append the html section for one record; None when already present.
		"""
		if now is None:
			now = datetime.now()
		stamp = archive_store.date_stamp(now)
		doc_path, html_path = self.doc_paths(record.identity, stamp)
		guard = (doc_path, record.identity)
		if guard in self._handled:
			return None
		fragment = build_image_html(
			self.resolve_url(record),
			record.original_filename,
			record.identity,
		)
		created = self.ensure_doc_file(doc_path, record)
		with open(doc_path, "r", encoding="utf-8") as handle:
			existing = handle.read()
		if (not created) and (footer_key(record) in existing):
			self._handled.add(guard)
			self.log(f"Doc already has section for {record.identity}: {doc_path}")
			return None
		section = build_markdown_section(fragment, stamp)
		content = existing + "\n\n" + section + "\n" + build_footer(record, now) + "\n\n"
		archive_store.atomic_write_text(doc_path, content)
		with open(html_path, "w", encoding="utf-8") as handle:
			handle.write(fragment + "\n")
		self._handled.add(guard)
		return doc_path

	#============================================
	def emit_for_all(self, now: datetime | None = None) -> BatchReport:
		"""
		Emit docs for every uploaded record; failures stay per identity.
		"""
		archive = self.store.load()
		report = BatchReport("emit-docs")
		for record in archive.uploaded:
			try:
				doc_path = self.emit_for_record(record, now)
			except (RuntimeError, OSError, ValueError) as error:
				self.log(f"Doc emission failed for {record.identity}: {error}")
				report.failed.append((record.identity, str(error)))
				continue
			if doc_path is None:
				report.skipped.append((record.identity, "already documented"))
				continue
			report.succeeded.append(record.identity)
			self.log(f"File saved as {doc_path}")
		return report
