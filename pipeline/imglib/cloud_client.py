import threading


#============================================
class GatewayError(RuntimeError):
	"""
	Raised when a Cloudinary call fails.
	"""


#============================================
class RateLimitError(GatewayError):
	"""
	Raised when Cloudinary rate limits block further requests.
	"""


MAX_LIST_RESULTS = 500


#============================================
class CloudinaryClient:
	"""
	Thin Cloudinary SDK wrapper for the archive use-cases.
	"""

	def __init__(self, cloud_name: str, api_key: str, api_secret: str, log_fn=None):
		self.log_fn = log_fn
		self._api_call_count = 0
		self._api_calls_by_context: dict[str, int] = {}
		self._counter_lock = threading.Lock()
		missing = [
			name
			for name, value in (
				("cloud_name", cloud_name),
				("api_key", api_key),
				("api_secret", api_secret),
			)
			if not value
		]
		if missing:
			raise GatewayError(
				"Missing Cloudinary credentials: "
				+ ", ".join(missing)
				+ ". Set cloudinary.* in settings.yaml or CLOUD_NAME/API_KEY/API_SECRET."
			)
		try:
			import cloudinary
			import cloudinary.api
			import cloudinary.exceptions
			import cloudinary.uploader
			import cloudinary.utils
		except ModuleNotFoundError as error:
			raise RuntimeError(
				"Missing dependency: cloudinary. Install it with pip install cloudinary."
			) from error
		cloudinary.config(
			cloud_name=cloud_name,
			api_key=api_key,
			api_secret=api_secret,
			secure=True,
		)
		self.uploader = cloudinary.uploader
		self.api = cloudinary.api
		self.utils = cloudinary.utils
		self._sdk_error_class = cloudinary.exceptions.Error
		self._rate_limited_class = getattr(cloudinary.exceptions, "RateLimited", None)

	#============================================
	def log(self, message: str) -> None:
		"""
		Emit one log line when logger is configured.
		"""
		if self.log_fn is not None:
			self.log_fn(message)

	#============================================
	def record_api_call(self, context: str) -> None:
		"""
		Track one outbound Cloudinary API call.
		"""
		# uploads call this from several worker threads
		with self._counter_lock:
			self._api_call_count += 1
			if context not in self._api_calls_by_context:
				self._api_calls_by_context[context] = 0
			self._api_calls_by_context[context] += 1

	#============================================
	def api_usage_snapshot(self) -> dict:
		"""
		Return API counters for reporting.
		"""
		with self._counter_lock:
			return {
				"api_call_count": self._api_call_count,
				"api_calls_by_context": dict(self._api_calls_by_context),
			}

	#============================================
	def call_api(self, context: str, call_fn):
		"""
		Run one SDK call and translate SDK failures into GatewayError.
		"""
		self.record_api_call(context)
		try:
			return call_fn()
		except self._sdk_error_class as error:
			self.raise_from_sdk_error(error, context)
		except OSError as error:
			raise GatewayError(f"Cloudinary {context} failed: {error}") from error

	#============================================
	def raise_from_sdk_error(self, error: Exception, context: str) -> None:
		"""
		Raise RateLimitError for throttled calls, GatewayError otherwise.
		"""
		rate_limited = self._rate_limited_class is not None and isinstance(
			error, self._rate_limited_class
		)
		if rate_limited or "rate limit" in str(error).lower():
			raise RateLimitError(
				f"Cloudinary rate limit exceeded while {context}: {error}. "
				+ "Raise delete.delay_seconds or lower upload.concurrency."
			) from error
		raise GatewayError(f"Cloudinary {context} failed: {error}") from error

	#============================================
	def upload(self, path: str, public_id: str) -> dict:
		"""
		Upload one local file under the requested public id.
		"""
		result = self.call_api(
			"upload",
			lambda: self.uploader.upload(path, public_id=public_id),
		)
		if not isinstance(result, dict):
			raise GatewayError(f"Unexpected upload response for {public_id}: {result!r}")
		return dict(result)

	#============================================
	def destroy(self, public_id: str) -> dict:
		"""
		Delete one remote asset by public id; returns {"result": ...}.
		"""
		result = self.call_api(
			"destroy",
			lambda: self.uploader.destroy(public_id),
		)
		if not isinstance(result, dict):
			raise GatewayError(f"Unexpected destroy response for {public_id}: {result!r}")
		return dict(result)

	#============================================
	def list_resources(self, resource_type: str = "upload", max_results: int = MAX_LIST_RESULTS) -> list[dict]:
		"""
		List remote resources of one delivery type, capped at 500 entries.
		"""
		capped = max(1, min(int(max_results), MAX_LIST_RESULTS))
		response = self.call_api(
			f"resources type={resource_type}",
			lambda: self.api.resources(type=resource_type, max_results=capped),
		)
		resources = []
		if isinstance(response, dict):
			resources = response.get("resources") or []
		if not isinstance(resources, list):
			raise GatewayError("Unexpected resources listing shape from Cloudinary.")
		if isinstance(response, dict) and response.get("next_cursor"):
			self.log(f"Remote listing truncated at {capped} resource(s).")
		return [dict(item) for item in resources if isinstance(item, dict)]

	#============================================
	def build_url(self, public_id: str) -> str:
		"""
		Build the secure delivery URL for one public id without a network call.
		"""
		url, _ = self.utils.cloudinary_url(public_id, secure=True)
		return url
