#!/usr/bin/env python3
from __future__ import annotations

import json
import logging
import math
from typing import Any, Optional

import boto3
from botocore.exceptions import ClientError, EndpointConnectionError, ReadTimeoutError

from configs.config import Config

logger = logging.getLogger(__name__)

TRANSIENT_CODES = ("TIMEOUT", "NETWORK", "RATE_LIMIT", "EMPTY", "MALFORMED")


class BedrockError(Exception):
	"""Typed error with a lightweight `.code` used by callers for retry decisions."""
	def __init__(self, message: str, code: str = "UNKNOWN") -> None:
		super().__init__(message)
		self.code = code


def classify_client_error(e: ClientError) -> str:
	err = e.response.get("Error", {}) if hasattr(e, "response") else {}
	status = err.get("Code", "") or err.get("StatusCode", "")
	msg = err.get("Message", "")
	low = (str(status) + " " + str(msg)).lower()
	if "throttl" in low or "429" in low or "rate" in low:
		return "RATE_LIMIT"
	if "unauthorized" in low or "accessdenied" in low or "403" in low or "401" in low:
		return "UNAUTHORIZED"
	if "timeout" in low:
		return "TIMEOUT"
	return "UNKNOWN"


def read_body(response: Any) -> dict:
	payload = response.get("body")
	raw = payload.read() if hasattr(payload, "read") else payload
	if isinstance(raw, (bytes, bytearray)):
		raw = raw.decode("utf-8", errors="ignore")
	if isinstance(raw, dict):
		return raw
	return json.loads(raw)


class BedrockClient:
	"""Text generation over the Bedrock runtime (Anthropic messages payload).

	Each call is a single attempt; retries belong to the caller because
	generation is never assumed idempotent.
	"""

	def __init__(self, model_id: Optional[str] = None, runtime: Any = None, temperature: Optional[float] = None) -> None:
		cfg = Config.get_bedrock_config()
		self.region = cfg.get("region_name", Config.AWS_REGION)
		self.model_id = model_id or cfg.get("model_id", Config.BEDROCK_MODEL_ID)
		self.temperature = float(cfg.get("temperature", 0.1) if temperature is None else temperature)
		self._runtime = runtime or boto3.client("bedrock-runtime", region_name=self.region)
		self._tokens_per_char = 4.0
		self._hard_total_cap = 100000  # combined prompt+response tokens

	def _estimate_tokens(self, text: str) -> int:
		if not text:
			return 0
		return math.ceil(len(text) / self._tokens_per_char)

	def generate(self, prompt: str, max_length: int) -> str:
		"""Return the model's text for prompt, at most max_length output tokens."""
		if self._estimate_tokens(prompt) + int(max_length) > self._hard_total_cap:
			raise BedrockError("Prompt exceeds hard token cap", code="TOO_LARGE")
		body = {
			"anthropic_version": "bedrock-2023-05-31",
			"max_tokens": int(max_length),
			"temperature": self.temperature,
			"messages": [
				{"role": "user", "content": [{"type": "text", "text": prompt}]}
			],
		}
		try:
			response = self._runtime.invoke_model(
				modelId=self.model_id,
				contentType="application/json",
				accept="application/json",
				body=json.dumps(body).encode("utf-8"),
			)
			data = read_body(response)
		except ReadTimeoutError as e:
			raise BedrockError(f"Bedrock timeout: {e}", code="TIMEOUT") from e
		except EndpointConnectionError as e:
			raise BedrockError(f"Bedrock unreachable: {e}", code="NETWORK") from e
		except ClientError as e:
			raise BedrockError(f"Bedrock error: {e}", code=classify_client_error(e)) from e
		except json.JSONDecodeError as e:
			raise BedrockError(f"Invalid JSON response from Bedrock: {e}", code="MALFORMED") from e
		try:
			content = "".join(part.get("text", "") for part in data["content"] if part.get("type") == "text")
		except (KeyError, TypeError, AttributeError) as e:
			raise BedrockError(f"Missing content in Bedrock response: {e}", code="MALFORMED") from e
		if not content.strip():
			raise BedrockError("Empty text content in response", code="EMPTY")
		logger.debug(f"Bedrock generation ok: prompt_len={len(prompt)} output_len={len(content)}")
		return content


__all__ = ["BedrockClient", "BedrockError", "TRANSIENT_CODES", "classify_client_error", "read_body"]
