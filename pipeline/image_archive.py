#!/usr/bin/env python3
import argparse
import asyncio
import dataclasses
import os
import sys
from datetime import datetime

import rich.console

from imglib import archive_store
from imglib import cloud_client
from imglib import doc_emitter
from imglib import pipeline_settings
from imglib import reconciler


RICH_CONSOLE = rich.console.Console()
# package errors all subclass RuntimeError
FATAL_ERRORS = (RuntimeError, FileNotFoundError)


#============================================
def log_step(message: str) -> None:
	"""
	Print one timestamped progress line.
	"""
	now_text = datetime.now().strftime("%H:%M:%S")
	line = f"[image_archive {now_text}] {message}"
	lower = message.lower()
	style = "cyan"
	if ("failed" in lower) or ("error" in lower):
		style = "bold red"
	elif ("rate limit" in lower) or ("skipping" in lower) or ("already" in lower):
		style = "yellow"
	elif ("wrote " in lower) or ("successful" in lower) or ("saved" in lower):
		style = "green"
	RICH_CONSOLE.print(line, style=style, markup=False, highlight=False)


#============================================
def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
	"""
	Parse command-line arguments.
	"""
	parser = argparse.ArgumentParser(
		description="Upload blog images to Cloudinary and keep the local archive in sync."
	)
	mode_group = parser.add_mutually_exclusive_group(required=True)
	mode_group.add_argument(
		"-a", "--all",
		dest="mode",
		action="store_const",
		const="all",
		help="Upload all images in the upload directory.",
	)
	mode_group.add_argument(
		"-g", "--gen",
		dest="mode",
		action="store_const",
		const="gen",
		help="Generate date directories from post front matter.",
	)
	mode_group.add_argument(
		"-o", "--original",
		dest="mode",
		action="store_const",
		const="original",
		help="Generate documentation with original image URLs.",
	)
	mode_group.add_argument(
		"-d", "--delete",
		dest="mode",
		action="store_const",
		const="delete",
		help="Delete all uploaded images from Cloudinary.",
	)
	mode_group.add_argument(
		"-r", "--refresh",
		dest="mode",
		action="store_const",
		const="refresh",
		help="Back up the archive and prune stale destroyed records.",
	)
	mode_group.add_argument(
		"-t", "--test",
		dest="mode",
		action="store_const",
		const="test",
		help="Refresh, then report divergence between files, archive, and remote.",
	)
	mode_group.add_argument(
		"--init",
		dest="mode",
		action="store_const",
		const="init",
		help="Create an empty archive file.",
	)
	parser.add_argument(
		"--settings",
		default="settings.yaml",
		help="YAML settings path for roots, credentials, and pacing.",
	)
	parser.add_argument(
		"--delete-delay",
		type=float,
		default=None,
		help="Seconds to wait between remote deletions (defaults from settings.yaml).",
	)
	parser.add_argument(
		"--concurrency",
		type=int,
		default=None,
		help="Maximum concurrent uploads (defaults from settings.yaml).",
	)
	args = parser.parse_args(argv)
	return args


#============================================
def apply_overrides(config: pipeline_settings.ArchiveConfig, args: argparse.Namespace):
	"""
	Apply command-line overrides on top of the settings-based config.
	"""
	changes = {}
	if args.delete_delay is not None:
		if args.delete_delay < 0:
			raise RuntimeError("--delete-delay must be >= 0")
		changes["delete_delay_seconds"] = args.delete_delay
	if args.concurrency is not None:
		if args.concurrency < 1:
			raise RuntimeError("--concurrency must be >= 1")
		changes["upload_concurrency"] = args.concurrency
	if not changes:
		return config
	return dataclasses.replace(config, **changes)


#============================================
def build_gateway(settings: dict) -> cloud_client.CloudinaryClient:
	credentials = pipeline_settings.get_cloud_credentials(settings)
	return cloud_client.CloudinaryClient(
		credentials["cloud_name"],
		credentials["api_key"],
		credentials["api_secret"],
		log_fn=log_step,
	)


#============================================
def log_batch_report(report: reconciler.BatchReport) -> None:
	log_step(report.summary())
	for identity, reason in report.failed:
		log_step(f"Failed {identity}: {reason}")


#============================================
def log_reconcile_report(report: reconciler.ReconcileReport) -> None:
	log_step(
		f"Remote assets: {report.remote_count}; "
		+ f"archive uploaded={report.refresh.uploaded_count}, "
		+ f"destroyed={report.refresh.destroyed_count}"
	)
	for identity, path in report.pending_files:
		log_step(f"Pending upload: {identity} ({path})")
	for record in report.unverified_records:
		log_step(f"Archived but missing remotely: {record.identity}")
	for record in report.untracked_remote:
		log_step(f"Remote but not archived: {record.identity}")
	if not (report.pending_files or report.unverified_records or report.untracked_remote):
		log_step("Archive, upload directory, and remote listing agree.")


#============================================
def run_mode(mode: str, config, settings: dict) -> int:
	"""
	Dispatch one CLI mode and return the process exit code.
	"""
	store = archive_store.ArchiveStore(config.archive_path, config.backup_root)
	if mode == "init":
		path = store.initialize()
		log_step(f"Wrote empty archive: {path}")
		return 0
	if mode == "gen":
		engine = reconciler.Reconciler(config, store, log_fn=log_step)
		created = engine.generate_date_skeleton()
		log_step(f"Date directories created: {len(created)} under {config.upload_root}")
		return 0
	if mode == "refresh":
		engine = reconciler.Reconciler(config, store, log_fn=log_step)
		engine.refresh()
		return 0

	gateway = build_gateway(settings)
	engine = reconciler.Reconciler(config, store, gateway=gateway, log_fn=log_step)
	exit_code = 0
	if mode == "all":
		report = asyncio.run(engine.upload_all())
		log_batch_report(report)
		exit_code = 0 if report.exit_ok() else 1
	elif mode == "delete":
		report = asyncio.run(engine.delete_all())
		log_batch_report(report)
		exit_code = 0 if report.exit_ok() else 1
	elif mode == "original":
		emitter = doc_emitter.DocEmitter(config, store, gateway=gateway, log_fn=log_step)
		report = emitter.emit_for_all()
		log_batch_report(report)
		exit_code = 0 if report.exit_ok() else 1
	elif mode == "test":
		log_reconcile_report(engine.self_test())
	else:
		raise RuntimeError(f"Unknown mode: {mode}")
	usage = gateway.api_usage_snapshot()
	log_step(f"Cloudinary API usage: calls={usage.get('api_call_count', 0)}")
	return exit_code


#============================================
def main(argv: list[str] | None = None) -> int:
	"""
	Run one archive operation selected by command-line flags.
	"""
	args = parse_args(argv)
	settings, settings_path = pipeline_settings.load_settings(args.settings)
	if os.path.isfile(settings_path):
		log_step(f"Using settings file: {settings_path}")
	else:
		log_step(f"Settings file not found, using defaults: {settings_path}")
	try:
		config = apply_overrides(pipeline_settings.build_archive_config(settings), args)
		return run_mode(args.mode, config, settings)
	except FATAL_ERRORS as error:
		log_step(f"Error: {error}")
		log_step("Aborting run.")
		return 1


if __name__ == "__main__":
	sys.exit(main())
