#!/usr/bin/env python3
from __future__ import annotations

import json
import logging
from typing import Any, List, Optional

import boto3
from botocore.exceptions import ClientError, EndpointConnectionError, ReadTimeoutError

from clients.bedrock_client import BedrockError, classify_client_error, read_body
from configs.config import Config

logger = logging.getLogger(__name__)


class EmbeddingClient:
	"""Text embeddings over the Bedrock runtime (Titan text embeddings payload)."""

	def __init__(self, model_id: Optional[str] = None, dimension: Optional[int] = None, runtime: Any = None) -> None:
		cfg = Config.get_embedding_config()
		self.model_id = model_id or cfg["model_id"]
		self.dimension = int(dimension or cfg["dimension"])
		self.max_input_chars = int(cfg["max_input_chars"])
		self._runtime = runtime or boto3.client("bedrock-runtime", region_name=cfg["region_name"])

	def embed(self, text: str) -> List[float]:
		"""Return a vector of exactly `self.dimension` floats for text."""
		body = {
			"inputText": (text or " ")[: self.max_input_chars],
			"dimensions": self.dimension,
			"normalize": True,
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
			raise BedrockError(f"Embedding timeout: {e}", code="TIMEOUT") from e
		except EndpointConnectionError as e:
			raise BedrockError(f"Embedding endpoint unreachable: {e}", code="NETWORK") from e
		except ClientError as e:
			raise BedrockError(f"Embedding error: {e}", code=classify_client_error(e)) from e
		except json.JSONDecodeError as e:
			raise BedrockError(f"Invalid JSON response from embedding model: {e}", code="MALFORMED") from e
		vector = data.get("embedding")
		if not isinstance(vector, list) or not vector:
			raise BedrockError("Missing embedding in response", code="MALFORMED")
		if len(vector) != self.dimension:
			raise BedrockError(
				f"Embedding has {len(vector)} dimensions, expected {self.dimension}",
				code="MALFORMED",
			)
		return [float(v) for v in vector]


__all__ = ["EmbeddingClient"]
