from __future__ import annotations

import base64
import logging
import os
from typing import Any, Dict, Optional, Sequence

import requests

from .config import OLLAMA_DEFAULT_HOST, OLLAMA_TIMEOUT_S
from .errors import InferenceError

logger = logging.getLogger(__name__)


def _get_base_url() -> str:
    host = os.getenv("OLLAMA_HOST", OLLAMA_DEFAULT_HOST).rstrip("/")
    if not host.startswith(("http://", "https://")):
        host = f"http://{host}"
    return host


def _get_timeout_s() -> float:
    try:
        return float(os.getenv("TILETAGGER_TIMEOUT_S", str(OLLAMA_TIMEOUT_S)))
    except ValueError:
        return OLLAMA_TIMEOUT_S


class OllamaClient:
    """
    Minimal client for Ollama's non-streaming /api/generate endpoint.

    Images are sent as base64 payloads; when a JSON schema is given it is
    passed as `format` so the model answers with conforming JSON text.
    Safe to share across worker threads.
    """

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = (base_url or _get_base_url()).rstrip("/")
        self.timeout = timeout if timeout is not None else _get_timeout_s()

    def generate(
        self,
        model: str,
        prompt: str,
        images: Sequence[bytes] = (),
        schema: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Returns the complete `response` text of one generate call.

        Raises:
            InferenceError: connection, timeout or non-2xx status.
        """
        payload: Dict[str, Any] = {
            "model": model,
            "prompt": prompt,
            "stream": False,
        }
        if images:
            payload["images"] = [base64.b64encode(img).decode("ascii") for img in images]
        if schema is not None:
            payload["format"] = schema

        url = f"{self.base_url}/api/generate"
        logger.debug("POST %s model=%s images=%d schema=%s", url, model, len(images), schema is not None)
        try:
            resp = requests.post(url, json=payload, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            raise InferenceError(f"Ollama request failed ({status}) for model {model}: {e}", status) from e
        except requests.exceptions.JSONDecodeError as e:
            raise InferenceError(f"Ollama returned a non-JSON body for model {model}") from e
        except requests.exceptions.RequestException as e:
            raise InferenceError(f"Ollama connection failed for {url}: {e}") from e

        if not isinstance(data, dict):
            raise InferenceError(f"Ollama returned an unexpected body for model {model}: {type(data).__name__}")
        text = data.get("response") or ""
        logger.debug("Response from %s: %s", model, text[:200])
        return text
