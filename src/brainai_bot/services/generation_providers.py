"""
Remote Generation Providers - adapters for external image and video APIs
Each adapter maps its provider's payload into the StatusResponse shape the
TaskPoller expects, so provider-specific parsing never reaches the poller
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
import logging

import httpx

from .task_poller import RemoteStatus, StatusResponse
from ..config import config
from ..exceptions import ConfigurationError, TerminalRemoteError, TransientRemoteError

logger = logging.getLogger(__name__)

MIN_PROMPT_LENGTH = 3

GOAPI_BASE_URL = "https://api.goapi.ai/api/v1"
FAL_QUEUE_URL = "https://queue.fal.run"

FAL_IMAGE_ENDPOINT = "fal-ai/nano-banana"
FAL_IMAGE_EDIT_ENDPOINT = "fal-ai/nano-banana/edit"
FAL_VIDEO_TEXT_ENDPOINT = "fal-ai/kling-video/v2.5-turbo/pro/text-to-video"
FAL_VIDEO_IMAGE_ENDPOINT = "fal-ai/kling-video/v2.5-turbo/pro/image-to-video"

VALID_ASPECT_RATIOS = {"1:1", "16:9", "9:16", "4:3", "3:4", "3:2", "2:3", "21:9"}

# Image providers a user may pick for themselves
IMAGE_PROVIDER_CHOICES = ("goapi", "fal-image")

# A Midjourney grid holds four images, numbered 1-4
GRID_SIZE = 4


def validate_prompt(prompt: Optional[str]) -> str:
    """
    Normalize a prompt before submission

    Raises:
        TerminalRemoteError: If the prompt is shorter than MIN_PROMPT_LENGTH
    """
    cleaned = (prompt or "").strip()
    if len(cleaned) < MIN_PROMPT_LENGTH:
        raise TerminalRemoteError(f"Prompt must be at least {MIN_PROMPT_LENGTH} characters long")
    return cleaned


def _clamp_progress(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return max(0, min(100, int(float(value))))
    except (TypeError, ValueError):
        return None


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _bounded_int(params: Dict[str, Any], name: str, default: int, low: int, high: int) -> int:
    """Read an integer option, clamped to [low, high]"""
    raw = params.get(name, default)
    try:
        value = int(raw)
    except (TypeError, ValueError) as e:
        raise TerminalRemoteError(f"Invalid {name}: {raw!r}") from e
    return max(low, min(high, value))


def map_goapi_status(data: Dict[str, Any]) -> StatusResponse:
    """
    Map a GoAPI task payload (the "data" object) to a StatusResponse

    Handles both Midjourney (output.image_url) and Kling (output.works[].video) shapes.
    """
    data = _as_dict(data)
    status = str(data.get("status", "")).lower()
    output = _as_dict(data.get("output"))
    progress = _clamp_progress(output.get("progress"))

    if status == "completed":
        url = output.get("image_url")
        if not url:
            works = output.get("works")
            first = _as_dict(works[0]) if isinstance(works, list) and works else {}
            video = _as_dict(first.get("video"))
            url = video.get("resource_without_watermark") or video.get("resource")
        if not url:
            return StatusResponse(RemoteStatus.FAILED, error="Provider returned no output")
        return StatusResponse(RemoteStatus.COMPLETED, output=url, progress=100)

    if status == "failed":
        error = data.get("error") or {}
        message = error.get("message") if isinstance(error, dict) else str(error)
        return StatusResponse(RemoteStatus.FAILED, error=message or "Generation failed")

    if status in ("pending", "staged"):
        return StatusResponse(RemoteStatus.QUEUED, progress=progress)

    return StatusResponse(RemoteStatus.PROCESSING, progress=progress)


def map_fal_status(status_payload: Dict[str, Any], result_payload: Optional[Dict[str, Any]] = None) -> StatusResponse:
    """Map a fal.ai queue status (and, once completed, its result) to a StatusResponse"""
    status_payload = _as_dict(status_payload)
    status = str(status_payload.get("status", "")).upper()

    if status == "IN_QUEUE":
        return StatusResponse(RemoteStatus.QUEUED)
    if status == "IN_PROGRESS":
        return StatusResponse(RemoteStatus.PROCESSING)
    if status != "COMPLETED":
        return StatusResponse(RemoteStatus.FAILED, error=f"Unexpected queue status: {status or 'missing'}")

    if status_payload.get("error"):
        return StatusResponse(RemoteStatus.FAILED, error=str(status_payload["error"]))

    result_payload = _as_dict(result_payload)
    images = result_payload.get("images")
    if isinstance(images, list) and images:
        url = _as_dict(images[0]).get("url")
    else:
        url = _as_dict(result_payload.get("video")).get("url")

    if not url:
        return StatusResponse(RemoteStatus.FAILED, error="Provider returned no output")
    return StatusResponse(RemoteStatus.COMPLETED, output=url, progress=100)


class RemoteGenerationAPI(ABC):
    """Abstract base class for remote generation providers"""

    category: str = "image"

    def __init__(self, timeout: float = None, client: Optional[httpx.AsyncClient] = None):
        """
        Args:
            timeout: HTTP timeout in seconds
            client: Shared AsyncClient (a short-lived one is opened per call if omitted)
        """
        self.timeout = timeout if timeout is not None else config.PROVIDER_HTTP_TIMEOUT
        self._client = client

    @abstractmethod
    async def submit(self, prompt: str, params: Optional[Dict[str, Any]] = None) -> str:
        """
        Start a remote job

        Returns:
            Remote task id
        """
        pass

    @abstractmethod
    async def check_status(self, remote_task_id: str) -> StatusResponse:
        """Fetch the job's normalized status"""
        pass

    @abstractmethod
    def is_configured(self) -> bool:
        """Check if credentials for the provider are present"""
        pass

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    async def _request(self, method: str, url: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Make an HTTP request and classify failures

        Raises:
            TransientRemoteError: Network errors, timeouts, 429 and 5xx responses
            TerminalRemoteError: Other 4xx responses and undecodable bodies
        """
        try:
            if self._client is not None:
                response = await self._client.request(method, url, headers=self._headers(), json=json, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.request(method, url, headers=self._headers(), json=json)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise TransientRemoteError(f"{type(e).__name__}: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientRemoteError(f"Provider returned status {response.status_code}")
        if response.status_code >= 400:
            raise TerminalRemoteError(f"Provider rejected request with status {response.status_code}: {response.text[:200]}")

        try:
            body = response.json()
        except ValueError as e:
            raise TerminalRemoteError("Provider returned a non-JSON body") from e
        if not isinstance(body, dict):
            raise TerminalRemoteError("Provider returned a non-object JSON body")
        return body

    def _require_configured(self):
        if not self.is_configured():
            raise TerminalRemoteError(f"{type(self).__name__} is not configured")


class _GoApiProvider(RemoteGenerationAPI):
    """Shared task API for GoAPI models"""

    def __init__(self, api_key: str = None, base_url: str = GOAPI_BASE_URL, **kwargs):
        super().__init__(**kwargs)
        self.api_key = api_key if api_key is not None else config.GOAPI_API_KEY
        self.base_url = base_url

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> Dict[str, str]:
        return {"x-api-key": self.api_key or "", "Content-Type": "application/json"}

    async def _create_task(self, body: Dict[str, Any]) -> str:
        self._require_configured()
        payload = await self._request("POST", f"{self.base_url}/task", json=body)
        task_id = _as_dict(payload.get("data")).get("task_id")
        if not task_id:
            raise TerminalRemoteError(payload.get("message") or "No task id in response")
        return task_id

    async def check_status(self, remote_task_id: str) -> StatusResponse:
        payload = await self._request("GET", f"{self.base_url}/task/{remote_task_id}")
        data = payload.get("data")
        if not isinstance(data, dict):
            # Maintenance pages and gateway errors arrive without a task object
            raise TransientRemoteError(f"Malformed task payload: {payload.get('message') or data!r}")
        return map_goapi_status(data)


class GoApiImageProvider(_GoApiProvider):
    """Midjourney image generation via GoAPI"""

    category = "image"

    async def submit(self, prompt: str, params: Optional[Dict[str, Any]] = None) -> str:
        params = params or {}
        aspect_ratio = params.get("aspect_ratio", "1:1")
        if aspect_ratio not in VALID_ASPECT_RATIOS:
            raise TerminalRemoteError(f"Unsupported aspect ratio: {aspect_ratio}")

        body_input = {"prompt": validate_prompt(prompt), "aspect_ratio": aspect_ratio}
        if params.get("process_mode"):
            body_input["process_mode"] = params["process_mode"]

        return await self._create_task({
            "model": "midjourney",
            "task_type": "imagine",
            "input": body_input,
        })

    async def _refine(self, task_type: str, origin_task_id: str, index: int) -> str:
        if not origin_task_id:
            raise TerminalRemoteError(f"{task_type.capitalize()} needs the id of a finished imagine task")
        if isinstance(index, bool) or not isinstance(index, int) or not 1 <= index <= GRID_SIZE:
            raise TerminalRemoteError(f"Image index must be between 1 and {GRID_SIZE} (got: {index!r})")

        return await self._create_task({
            "model": "midjourney",
            "task_type": task_type,
            "input": {"origin_task_id": origin_task_id, "index": str(index)},
        })

    async def upscale(self, origin_task_id: str, index: int) -> str:
        """
        Upscale one image of a finished Midjourney grid

        Args:
            origin_task_id: Remote id of the imagine task
            index: Grid position, 1-4

        Returns:
            Remote id of the upscale task (polled like any other task)
        """
        return await self._refine("upscale", origin_task_id, index)

    async def variation(self, origin_task_id: str, index: int) -> str:
        """Request a new grid of variations of one grid image"""
        return await self._refine("variation", origin_task_id, index)


class GoApiKlingVideoProvider(_GoApiProvider):
    """Kling video generation via GoAPI"""

    category = "video"

    async def submit(self, prompt: str, params: Optional[Dict[str, Any]] = None) -> str:
        params = params or {}
        duration = _bounded_int(params, "duration", 5, 5, 10)
        mode = params.get("mode", "std")

        return await self._create_task({
            "model": "kling",
            "task_type": "video_generation",
            "input": {
                "prompt": validate_prompt(prompt),
                "negative_prompt": params.get("negative_prompt", ""),
                "cfg_scale": params.get("cfg_scale", 0.5),
                "duration": duration,
                "aspect_ratio": params.get("aspect_ratio", "1:1"),
                "mode": mode,
            },
        })


class FalQueueProvider(RemoteGenerationAPI):
    """
    fal.ai queue API

    Submits to https://queue.fal.run/{endpoint}; status and result live under
    the app id (owner/name) at /requests/{id}/status and /requests/{id}.
    """

    def __init__(
        self,
        endpoint: str,
        category: str,
        edit_endpoint: Optional[str] = None,
        api_key: str = None,
        base_url: str = FAL_QUEUE_URL,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.endpoint = endpoint
        self.edit_endpoint = edit_endpoint
        self.category = category
        self.api_key = api_key if api_key is not None else config.FAL_KEY
        self.base_url = base_url

    @staticmethod
    def app_id(endpoint: str) -> str:
        return "/".join(endpoint.split("/")[:2])

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Key {self.api_key or ''}", "Content-Type": "application/json"}

    def _build_input(self, prompt: str, params: Dict[str, Any]) -> Dict[str, Any]:
        body: Dict[str, Any] = {"prompt": prompt}
        if self.category == "image":
            body["num_images"] = _bounded_int(params, "num_images", 1, 1, 4)
            if params.get("image_urls"):
                body["image_urls"] = list(params["image_urls"])
        else:
            body["duration"] = str(params.get("duration", "5"))
            body["negative_prompt"] = params.get("negative_prompt", "blur, distort, and low quality")
            body["cfg_scale"] = params.get("cfg_scale", 0.5)
            if params.get("image_url"):
                body["image_url"] = params["image_url"]
            else:
                body["aspect_ratio"] = params.get("aspect_ratio", "16:9")
        return body

    def _endpoint_for(self, params: Dict[str, Any]) -> str:
        if self.edit_endpoint and (params.get("image_urls") or params.get("image_url")):
            return self.edit_endpoint
        return self.endpoint

    async def submit(self, prompt: str, params: Optional[Dict[str, Any]] = None) -> str:
        params = params or {}
        self._require_configured()
        body = self._build_input(validate_prompt(prompt), params)
        endpoint = self._endpoint_for(params)

        payload = await self._request("POST", f"{self.base_url}/{endpoint}", json=body)
        request_id = payload.get("request_id")
        if not request_id:
            raise TerminalRemoteError("No request id in queue response")

        logger.info(f"Queued fal request {request_id} on {endpoint}")
        return request_id

    async def check_status(self, remote_task_id: str) -> StatusResponse:
        app_url = f"{self.base_url}/{self.app_id(self.endpoint)}/requests/{remote_task_id}"
        status_payload = await self._request("GET", f"{app_url}/status")

        result_payload = None
        if str(status_payload.get("status", "")).upper() == "COMPLETED" and not status_payload.get("error"):
            result_payload = await self._request("GET", app_url)

        return map_fal_status(status_payload, result_payload)


def get_generation_provider(provider_name: str = None, category: str = "image", **kwargs) -> RemoteGenerationAPI:
    """
    Factory function to get a generation provider

    Args:
        provider_name: 'goapi', 'goapi-video', 'fal-image', 'fal-video', or None for
            the configured provider of the category
        category: Used to pick the configured provider when no name is given

    Returns:
        RemoteGenerationAPI instance
    """
    if provider_name is None:
        provider_name = config.VIDEO_PROVIDER if category == "video" else config.IMAGE_PROVIDER

    name = provider_name.lower()
    if name == "goapi":
        return GoApiImageProvider(**kwargs)
    elif name == "goapi-video":
        return GoApiKlingVideoProvider(**kwargs)
    elif name == "fal-image":
        return FalQueueProvider(FAL_IMAGE_ENDPOINT, "image", edit_endpoint=FAL_IMAGE_EDIT_ENDPOINT, **kwargs)
    elif name == "fal-video":
        return FalQueueProvider(FAL_VIDEO_TEXT_ENDPOINT, "video", edit_endpoint=FAL_VIDEO_IMAGE_ENDPOINT, **kwargs)
    else:
        raise ConfigurationError(f"Unknown generation provider: {provider_name}")
