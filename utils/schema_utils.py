#!/usr/bin/env python3
from typing import Any, Type

from pydantic import BaseModel


def _drop_titles(node: Any) -> Any:
	if isinstance(node, dict):
		return {k: _drop_titles(v) for k, v in node.items() if not (k == "title" and isinstance(v, str))}
	if isinstance(node, list):
		return [_drop_titles(v) for v in node]
	return node


def to_json_schema(model_cls: Type[BaseModel]) -> dict:
	"""Return a compact JSON Schema for a Pydantic v2 model class.

	Titles are dropped to keep the schema short inside prompts.
	"""
	return _drop_titles(model_cls.model_json_schema())
