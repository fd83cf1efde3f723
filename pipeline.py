"""Two-stage Gemini pipeline: grounded prompt refinement, then image generation.

The orchestrator owns every piece of state the page shows (loading flag,
retry count, last result, last error, API key status) and is the only
place that catches and classifies pipeline failures.
"""

import asyncio
import base64
import logging
import threading
from enum import Enum
from typing import Callable, Optional

from google import genai
from google.genai import types
from google.genai.types import Modality

import config
from key_bridge import KeyBridge
from models import GeneratedResult, GenerationRequest
from retry import is_transient_error, with_retry
from system_prompt import FALLBACK_PROMPT, REFINEMENT_PROMPT, SYSTEM_INSTRUCTION

logger = logging.getLogger(__name__)

AUTH_INVALID_SIGNAL = "Requested entity was not found"

MESSAGES = {
    "auth_invalid": "There was a problem with the API key. Please select your key again.",
    "overloaded": "The server is under heavy load. Please try again in a moment.",
    "empty_generation": "No image was generated.",
    "generic": "An error occurred.",
}


class EmptyGenerationError(RuntimeError):
    def __init__(self, message=MESSAGES["empty_generation"]):
        super().__init__(message)


class PipelineBusyError(RuntimeError):
    def __init__(self):
        super().__init__("A generation is already in progress")


class ErrorKind(str, Enum):
    TRANSIENT_OVERLOAD = "transient_overload"
    AUTH_INVALID = "auth_invalid"
    EMPTY_GENERATION = "empty_generation"
    UNCLASSIFIED = "unclassified"


class PipelinePhase(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ApiKeyStatus(str, Enum):
    UNKNOWN = "unknown"
    ABSENT = "absent"
    PRESENT = "present"


def make_client(api_key):
    return genai.Client(
        api_key=api_key,
        http_options=types.HttpOptions(timeout=config.GEMINI_TIMEOUT_MS),
    )


# ── Stage 1: prompt refinement ──

def build_refinement_prompt(request: GenerationRequest, brand: str = config.PRODUCT_BRAND) -> str:
    return REFINEMENT_PROMPT.format(
        brand=brand,
        product_name=request.product_name,
        category=request.category.value,
        worker_concept=request.worker_concept.value,
        aspect_ratio=request.aspect_ratio.value,
    )


def build_fallback_prompt(request: GenerationRequest, brand: str = config.PRODUCT_BRAND) -> str:
    return FALLBACK_PROMPT.format(brand=brand, product_name=request.product_name)


async def refine_prompt(
    client,
    request: GenerationRequest,
    model: str = config.TEXT_MODEL,
    brand: str = config.PRODUCT_BRAND,
) -> str:
    """Research the product with Google Search grounding and return the image prompt.

    An empty or missing text field falls back to a fixed macro-photography
    prompt built from the raw product name.
    """
    async with client.aio as aclient:
        response = await aclient.models.generate_content(
            model=model,
            contents=build_refinement_prompt(request, brand),
            config=types.GenerateContentConfig(
                system_instruction=SYSTEM_INSTRUCTION.format(brand=brand),
                tools=[types.Tool(google_search=types.GoogleSearch())],
            ),
        )
    text = getattr(response, "text", None)
    if not text:
        logger.info("Refinement returned no text, using fallback prompt")
        return build_fallback_prompt(request, brand)
    return text


# ── Stage 2: image generation ──

def extract_image_url(response) -> str:
    """Return the first inline image part of the first candidate as a PNG data URI."""
    candidates = getattr(response, "candidates", None) or []
    if candidates:
        content = getattr(candidates[0], "content", None)
        for part in getattr(content, "parts", None) or []:
            inline_data = getattr(part, "inline_data", None)
            if inline_data is None or not inline_data.data:
                continue
            data = inline_data.data
            if isinstance(data, bytes):
                data = base64.b64encode(data).decode("utf-8")
            return f"data:image/png;base64,{data}"
    raise EmptyGenerationError()


async def generate_image(
    client,
    prompt: str,
    aspect_ratio: str,
    image_size: str,
    model: str = config.IMAGE_MODEL,
) -> str:
    async with client.aio as aclient:
        response = await aclient.models.generate_content(
            model=model,
            contents=types.Content(role="user", parts=[types.Part(text=prompt)]),
            config=types.GenerateContentConfig(
                response_modalities=[Modality.TEXT, Modality.IMAGE],
                image_config=types.ImageConfig(aspect_ratio=aspect_ratio, image_size=image_size),
            ),
        )
    return extract_image_url(response)


def classify_error(exc):
    """Map a pipeline failure to an ErrorKind and the message shown to the user."""
    message = str(exc)
    if AUTH_INVALID_SIGNAL in message:
        return ErrorKind.AUTH_INVALID, MESSAGES["auth_invalid"]
    if is_transient_error(exc):
        return ErrorKind.TRANSIENT_OVERLOAD, MESSAGES["overloaded"]
    if isinstance(exc, EmptyGenerationError):
        return ErrorKind.EMPTY_GENERATION, message
    return ErrorKind.UNCLASSIFIED, message or MESSAGES["generic"]


class PipelineState:
    def __init__(self):
        self.phase = PipelinePhase.IDLE
        self.is_loading = False
        self.retry_count = 0
        self.result: Optional[GeneratedResult] = None
        self.error: Optional[str] = None
        self.error_kind: Optional[ErrorKind] = None
        self.api_key_status = ApiKeyStatus.UNKNOWN

    def to_dict(self):
        return {
            "phase": self.phase.value,
            "is_loading": self.is_loading,
            "retry_count": self.retry_count,
            "has_result": self.result is not None,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "api_key_status": self.api_key_status.value,
        }


class PipelineOrchestrator:
    def __init__(
        self,
        key_bridge: KeyBridge,
        client_factory: Callable = make_client,
        *,
        text_model: str = config.TEXT_MODEL,
        image_model: str = config.IMAGE_MODEL,
        brand: str = config.PRODUCT_BRAND,
        max_retries: int = config.MAX_RETRIES,
        sleep=asyncio.sleep,
    ):
        self.key_bridge = key_bridge
        self.client_factory = client_factory
        self.text_model = text_model
        self.image_model = image_model
        self.brand = brand
        self.max_retries = max_retries
        self.sleep = sleep
        self.state = PipelineState()
        self._running = threading.Lock()

    async def check_api_key(self) -> ApiKeyStatus:
        has_key = await self.key_bridge.has_selected_api_key()
        self.state.api_key_status = ApiKeyStatus.PRESENT if has_key else ApiKeyStatus.ABSENT
        return self.state.api_key_status

    async def select_key(self, api_key=None) -> ApiKeyStatus:
        await self.key_bridge.open_select_key(api_key)
        return await self.check_api_key()

    def _new_client(self):
        return self.client_factory(self.key_bridge.get_api_key())

    def _on_retry(self, attempt):
        self.state.retry_count = attempt

    async def _retrying(self, fn):
        return await with_retry(fn, self.max_retries, on_retry=self._on_retry, sleep=self.sleep)

    async def _run(self, request: GenerationRequest) -> GeneratedResult:
        logger.info("Refining prompt for %r (%s, %s)", request.product_name, request.category.value, request.worker_concept.value)
        refined_prompt = await self._retrying(
            lambda: refine_prompt(self._new_client(), request, self.text_model, self.brand)
        )

        image_size = request.image_size
        logger.info("Generating %s image at %s", request.aspect_ratio.value, image_size)
        image_url = await self._retrying(
            lambda: generate_image(
                self._new_client(), refined_prompt, request.aspect_ratio.value, image_size, self.image_model
            )
        )
        return GeneratedResult(image_url=image_url, prompt_text=refined_prompt)

    async def submit(self, request: GenerationRequest) -> Optional[GeneratedResult]:
        """Run both stages for ``request``.

        Returns the new result, or None when the run failed; the classified
        error is then on ``state``. Raises PipelineBusyError if a run is
        already in flight.
        """
        if not self._running.acquire(blocking=False):
            raise PipelineBusyError()

        state = self.state
        try:
            state.phase = PipelinePhase.RUNNING
            state.is_loading = True
            state.error = None
            state.error_kind = None
            state.retry_count = 0

            try:
                result = await self._run(request)
            except Exception as e:
                logger.exception("Generation failed for %r", request.product_name)
                kind, message = classify_error(e)
                state.error_kind = kind
                state.error = message
                if kind is ErrorKind.AUTH_INVALID:
                    state.api_key_status = ApiKeyStatus.ABSENT
                state.phase = PipelinePhase.FAILED
                return None
            finally:
                state.is_loading = False
                state.retry_count = 0

            state.result = result
            state.phase = PipelinePhase.SUCCEEDED
            return result
        finally:
            self._running.release()
