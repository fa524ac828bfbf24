# Standard Library
import os


_TEMPLATE_CACHE = {}


#============================================
class TemplateMissing(RuntimeError):
	"""
	Raised when the documentation template cannot be read.
	"""


#============================================
def load_template(path: str) -> str:
	"""
	Load a documentation template, caching by absolute path.
	"""
	if not path:
		raise ValueError("template path is required")
	abs_path = os.path.abspath(path)
	if abs_path in _TEMPLATE_CACHE:
		return _TEMPLATE_CACHE[abs_path]
	if not os.path.isfile(abs_path):
		raise TemplateMissing(f"Template file not found: {abs_path}")
	with open(abs_path, "r", encoding="utf-8") as handle:
		text = handle.read()
	_TEMPLATE_CACHE[abs_path] = text
	return text


#============================================
def clear_template_cache() -> None:
	_TEMPLATE_CACHE.clear()


#============================================
def render_template(template: str, placeholder: str, value: str) -> str:
	"""
	Replace the first occurrence of placeholder with value.
	"""
	if not template:
		return ""
	if not placeholder:
		raise ValueError("placeholder is required")
	if placeholder not in template:
		raise TemplateMissing(f"Template does not contain placeholder {placeholder}")
	return template.replace(placeholder, value if value is not None else "", 1)
