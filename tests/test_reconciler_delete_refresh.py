import asyncio
import dataclasses
import json
import os
import sys
from datetime import datetime

import pytest

import git_file_utils


REPO_ROOT = git_file_utils.get_repo_root()
PIPELINE_DIR = os.path.join(REPO_ROOT, "pipeline")
if PIPELINE_DIR not in sys.path:
	sys.path.insert(0, PIPELINE_DIR)

from imglib import archive_store
from imglib import cloud_client
from imglib import pipeline_settings
from imglib import reconciler


FIXED_NOW = datetime(2024, 5, 6, 12, 0, 0)


#============================================
class DestroyGateway:
	"""
	Gateway stub that records destroy calls and returns canned results.
	"""

	def __init__(self, results=None, remote=None):
		self.results = dict(results or {})
		self.remote = list(remote or [])
		self.destroyed = []

	def destroy(self, public_id: str) -> dict:
		self.destroyed.append(public_id)
		outcome = self.results.get(public_id, "ok")
		if isinstance(outcome, Exception):
			raise outcome
		return {"result": outcome}

	def list_resources(self, resource_type: str = "upload", max_results: int = 500) -> list[dict]:
		return list(self.remote)[:max_results]


#============================================
def make_record(identity: str) -> archive_store.AssetRecord:
	return archive_store.AssetRecord(
		identity=identity,
		remote_url=f"https://example.test/{identity}.jpg",
		original_filename=identity.rsplit("/", 1)[-1] + ".jpg",
		remote_metadata={"etag": f"etag-{identity}"},
	)


#============================================
def make_engine(tmp_path, gateway=None, uploaded=(), destroyed=(), **overrides):
	config = pipeline_settings.build_archive_config({}, str(tmp_path))
	values = {"delete_delay_seconds": 0.0}
	values.update(overrides)
	config = dataclasses.replace(config, **values)
	store = archive_store.ArchiveStore(config.archive_path, config.backup_root)
	archive = archive_store.Archive(
		uploaded=[make_record(identity) for identity in uploaded],
		destroyed=[make_record(identity) for identity in destroyed],
	)
	store.save(archive)
	os.makedirs(config.upload_root, exist_ok=True)
	engine = reconciler.Reconciler(config, store, gateway=gateway)
	return engine, store, config


#============================================
def test_delete_all_scenario(tmp_path) -> None:
	"""
	Deleting the only uploaded identity moves it to destroyed.
	"""
	gateway = DestroyGateway()
	engine, store, _ = make_engine(tmp_path, gateway, uploaded=["2024/1/2/cat"])
	report = asyncio.run(engine.delete_all())
	assert report.succeeded == ["2024/1/2/cat"]
	archive = store.load()
	assert archive.uploaded == []
	assert [record.identity for record in archive.destroyed] == ["2024/1/2/cat"]


#============================================
def test_delete_all_failure_keeps_identity_and_continues(tmp_path) -> None:
	"""
	A failed delete stays in uploaded while the loop keeps going.
	"""
	gateway = DestroyGateway(
		results={
			"2024/1/2/a": cloud_client.GatewayError("boom"),
			"2024/1/2/b": "error",
		}
	)
	engine, store, _ = make_engine(
		tmp_path,
		gateway,
		uploaded=["2024/1/2/a", "2024/1/2/b", "2024/1/2/c"],
	)
	report = asyncio.run(engine.delete_all())
	assert gateway.destroyed == ["2024/1/2/a", "2024/1/2/b", "2024/1/2/c"]
	assert report.succeeded == ["2024/1/2/c"]
	assert [identity for identity, _ in report.failed] == ["2024/1/2/a", "2024/1/2/b"]
	archive = store.load()
	assert [record.identity for record in archive.uploaded] == ["2024/1/2/a", "2024/1/2/b"]
	assert [record.identity for record in archive.destroyed] == ["2024/1/2/c"]


#============================================
def test_delete_all_treats_not_found_as_gone(tmp_path) -> None:
	"""
	A remote 'not found' means the asset is already absent.
	"""
	gateway = DestroyGateway(results={"2024/1/2/cat": "not found"})
	engine, store, _ = make_engine(tmp_path, gateway, uploaded=["2024/1/2/cat"])
	asyncio.run(engine.delete_all())
	assert store.load().uploaded == []


#============================================
def test_delete_all_persists_after_each_move(tmp_path) -> None:
	"""
	Progress before a crash must already be on disk.
	"""
	engine, store, config = make_engine(
		tmp_path,
		None,
		uploaded=["2024/1/2/a", "2024/1/2/b"],
	)

	class CrashingGateway(DestroyGateway):
		def destroy(self, public_id: str) -> dict:
			if public_id == "2024/1/2/b":
				raise ValueError("connection dropped")
			return super().destroy(public_id)

	engine.gateway = CrashingGateway()
	with pytest.raises(ValueError):
		asyncio.run(engine.delete_all())
	with open(config.archive_path, "r", encoding="utf-8") as handle:
		payload = json.load(handle)
	assert [entry["publicId"] for entry in payload["uploaded"]] == ["2024/1/2/b"]
	assert [entry["publicId"] for entry in payload["destroyed"]] == ["2024/1/2/a"]


#============================================
def test_delete_all_missing_archive_is_fatal(tmp_path) -> None:
	"""
	An unreadable archive aborts the delete run.
	"""
	config = pipeline_settings.build_archive_config({}, str(tmp_path))
	store = archive_store.ArchiveStore(config.archive_path, config.backup_root)
	engine = reconciler.Reconciler(config, store, gateway=DestroyGateway())
	with pytest.raises(archive_store.ArchiveMissing):
		asyncio.run(engine.delete_all())


#============================================
def test_refresh_keeps_history_of_reuploaded_identity(tmp_path) -> None:
	"""
	Regression: destroyed history of a re-uploaded identity survives refresh.
	"""
	engine, store, _ = make_engine(
		tmp_path,
		uploaded=["2024/1/2/cat"],
		destroyed=["2024/1/2/cat", "2023/9/9/gone"],
	)
	report = engine.refresh(FIXED_NOW)
	assert report.pruned == 1
	archive = store.load()
	assert [record.identity for record in archive.destroyed] == ["2024/1/2/cat"]
	assert [record.identity for record in archive.uploaded] == ["2024/1/2/cat"]


#============================================
def test_refresh_backs_up_before_pruning(tmp_path) -> None:
	"""
	The backup must hold the archive as it was before the prune.
	"""
	engine, store, config = make_engine(tmp_path, destroyed=["2023/9/9/gone"])
	report = engine.refresh(FIXED_NOW)
	assert report.backup_path == os.path.join(config.backup_root, "20240506.json")
	with open(report.backup_path, "r", encoding="utf-8") as handle:
		snapshot = json.load(handle)
	assert [entry["publicId"] for entry in snapshot["destroyed"]] == ["2023/9/9/gone"]
	assert store.load().destroyed == []


#============================================
def test_refresh_is_idempotent(tmp_path) -> None:
	"""
	Two refreshes in a row leave the same archive content.
	"""
	engine, store, config = make_engine(
		tmp_path,
		uploaded=["2024/1/2/cat", "2024/1/3/dog"],
		destroyed=["2024/1/2/cat", "2023/9/9/gone"],
	)
	engine.refresh(FIXED_NOW)
	first = store.load().to_dict()
	second_report = engine.refresh(FIXED_NOW)
	assert store.load().to_dict() == first
	assert second_report.pruned == 0
	# same-day collision resolves to a suffixed backup by default
	assert second_report.backup_path == os.path.join(config.backup_root, "20240506-2.json")


#============================================
def test_refresh_backup_collision_policies(tmp_path) -> None:
	"""
	skip keeps the earlier backup, fail raises BackupCollision.
	"""
	engine, store, config = make_engine(tmp_path, backup_collision="skip")
	engine.refresh(FIXED_NOW)
	assert engine.refresh(FIXED_NOW).backup_path is None
	engine.config = dataclasses.replace(config, backup_collision="fail")
	with pytest.raises(archive_store.BackupCollision):
		engine.refresh(FIXED_NOW)


#============================================
def test_list_remote_assets_excludes_samples(tmp_path) -> None:
	"""
	Remote listing drops the reserved sample namespace.
	"""
	remote = [
		{"public_id": "samples/landscapes/beach", "secure_url": "https://example.test/beach.jpg"},
		{"public_id": "2024/1/2/cat", "secure_url": "https://example.test/cat.jpg", "original_filename": "cat"},
	]
	engine, _, _ = make_engine(tmp_path, DestroyGateway(remote=remote))
	records = engine.list_remote_assets()
	assert [record.identity for record in records] == ["2024/1/2/cat"]
	assert engine.public_id_exists("2024/1/2/cat", records)
	assert not engine.public_id_exists("samples/landscapes/beach", records)


#============================================
def test_self_test_reports_divergence(tmp_path) -> None:
	"""
	Self-test lists pending files, unverified records, and untracked remote assets.
	"""
	remote = [
		{"public_id": "2024/1/2/cat", "secure_url": "https://example.test/cat.jpg"},
		{"public_id": "2024/1/9/stray", "secure_url": "https://example.test/stray.jpg"},
	]
	engine, _, config = make_engine(
		tmp_path,
		DestroyGateway(remote=remote),
		uploaded=["2024/1/2/cat", "2024/1/3/lost"],
	)
	pending_path = os.path.join(config.upload_root, "2024", "1", "4", "new.png")
	os.makedirs(os.path.dirname(pending_path))
	with open(pending_path, "wb") as handle:
		handle.write(b"png")
	report = engine.self_test(FIXED_NOW)
	assert report.remote_count == 2
	assert report.pending_files == [("2024/1/4/new", pending_path)]
	assert [record.identity for record in report.unverified_records] == ["2024/1/3/lost"]
	assert [record.identity for record in report.untracked_remote] == ["2024/1/9/stray"]


#============================================
def test_refresh_skip_policy_snapshots_changed_archive(tmp_path) -> None:
	"""
	skip must not prune history that no same-day backup holds yet.
	"""
	engine, store, config = make_engine(tmp_path, backup_collision="skip")
	morning = datetime(2024, 5, 6, 9, 0, 0)
	evening = datetime(2024, 5, 6, 18, 0, 0)
	assert engine.refresh(morning).backup_path == os.path.join(config.backup_root, "20240506.json")
	# cat is uploaded and destroyed after the morning backup
	archive = store.load()
	archive_store.append(archive, make_record("2024/5/6/cat"))
	archive_store.move_to_destroyed(archive, "2024/5/6/cat")
	store.save(archive)
	report = engine.refresh(evening)
	assert report.pruned == 1
	assert report.backup_path == os.path.join(config.backup_root, "20240506-2.json")
	with open(report.backup_path, "r", encoding="utf-8") as handle:
		snapshot = json.load(handle)
	assert [entry["publicId"] for entry in snapshot["destroyed"]] == ["2024/5/6/cat"]
	# nothing changed since the last snapshot, so skip applies again
	assert engine.refresh(evening).backup_path is None


#============================================
def test_delete_all_paces_between_calls(tmp_path, monkeypatch) -> None:
	"""
	N deletions wait N-1 times with the configured delay, never before the first.
	"""
	events = []

	async def fake_sleep(seconds):
		events.append(("sleep", seconds))

	class RecordingGateway(DestroyGateway):
		def destroy(self, public_id: str) -> dict:
			events.append(("destroy", public_id))
			return super().destroy(public_id)

	engine, _, _ = make_engine(
		tmp_path,
		RecordingGateway(),
		uploaded=["2024/1/2/a", "2024/1/2/b", "2024/1/2/c"],
		delete_delay_seconds=0.75,
	)
	monkeypatch.setattr(reconciler.asyncio, "sleep", fake_sleep)
	asyncio.run(engine.delete_all())
	assert events == [
		("destroy", "2024/1/2/a"),
		("sleep", 0.75),
		("destroy", "2024/1/2/b"),
		("sleep", 0.75),
		("destroy", "2024/1/2/c"),
	]
