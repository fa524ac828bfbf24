import os
import re
from typing import NamedTuple


# matches TOML (date = "2024-05-06") and YAML (date: 2024-05-06) front matter
POST_DATE_RE = re.compile(r"\bdate\s*[:=]\s*[\"']?(\d{4})-(\d{2})-(\d{2})")


#============================================
class DateKey(NamedTuple):
	year: int
	month: int
	day: int


#============================================
def extract_date_key(text: str) -> DateKey | None:
	"""
	Return the first post date found in text, line by line.
	"""
	for line in (text or "").splitlines():
		match = POST_DATE_RE.search(line)
		if match is None:
			continue
		year, month, day = (int(part) for part in match.groups())
		if not (1 <= month <= 12 and 1 <= day <= 31):
			continue
		return DateKey(year=year, month=month, day=day)
	return None


#============================================
def list_post_files(posts_root: str) -> list[str]:
	"""
	List regular post files under posts_root, sorted for stable output.
	"""
	if not os.path.isdir(posts_root):
		raise FileNotFoundError(f"Posts directory not found: {posts_root}")
	paths = []
	for dirpath, dirnames, filenames in os.walk(posts_root):
		dirnames.sort()
		for filename in sorted(filenames):
			path = os.path.join(dirpath, filename)
			if os.path.isfile(path):
				paths.append(path)
	return paths


#============================================
def read_post_dates(posts_root: str) -> list[tuple[DateKey, str]]:
	"""
	Collect (date key, post path) for every post that declares a date.
	"""
	results = []
	for path in list_post_files(posts_root):
		with open(path, "r", encoding="utf-8", errors="replace") as handle:
			text = handle.read()
		date_key = extract_date_key(text)
		if date_key is None:
			continue
		results.append((date_key, path))
	return results


#============================================
def date_directory(upload_root: str, date_key: DateKey) -> str:
	"""
	Build upload_root/Y/M/D without zero padding.
	"""
	return os.path.join(upload_root, str(date_key.year), str(date_key.month), str(date_key.day))
