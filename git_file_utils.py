import os
import subprocess


_REPO_ROOT = ""


#============================================
def get_repo_root() -> str:
	"""
	Resolve the repository root with git, falling back to this file's directory.
	"""
	global _REPO_ROOT
	if _REPO_ROOT:
		return _REPO_ROOT
	module_dir = os.path.dirname(os.path.abspath(__file__))
	try:
		result = subprocess.run(
			["git", "rev-parse", "--show-toplevel"],
			cwd=module_dir,
			capture_output=True,
			text=True,
			check=False,
		)
	except FileNotFoundError:
		result = None
	root = ""
	if result is not None and result.returncode == 0:
		root = result.stdout.strip()
	# outside a checkout (sdist, copied tree) this file sits at the repo root
	if not root or not os.path.isfile(os.path.join(root, "git_file_utils.py")):
		root = module_dir
	_REPO_ROOT = root
	return root
