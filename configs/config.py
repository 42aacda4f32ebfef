import os
from typing import Dict, Any

class Config:
	"""Configuration for the release notes pipeline."""

	# AWS Bedrock Configuration
	AWS_REGION = os.getenv("AWS_REGION", "us-east-1")
	BEDROCK_MODEL_ID = os.getenv("BEDROCK_MODEL_ID", "anthropic.claude-3-sonnet-20240229-v1:0")
	BEDROCK_TEMPERATURE = float(os.getenv("BEDROCK_TEMPERATURE", "0.1"))
	EMBEDDING_MODEL_ID = os.getenv("EMBEDDING_MODEL_ID", "amazon.titan-embed-text-v2:0")
	EMBEDDING_DIM = int(os.getenv("EMBEDDING_DIM", "1024"))
	EMBED_MAX_INPUT_CHARS = int(os.getenv("EMBED_MAX_INPUT_CHARS", "8000"))

	# LangSmith Configuration
	LANGSMITH_API_KEY = os.getenv("LANGSMITH_API_KEY", "")
	LANGSMITH_PROJECT = os.getenv("LANGSMITH_PROJECT", "release-notes-pipeline")
	LANGSMITH_ENDPOINT = os.getenv("LANGSMITH_ENDPOINT", "https://api.smith.langchain.com")

	# GitHub Configuration
	GITHUB_API_URL = os.getenv("GITHUB_API_URL", "https://api.github.com").rstrip('/')
	GITHUB_TOKEN = os.getenv("GITHUB_TOKEN") or os.getenv("GITHUB_PAT")
	HTTP_TIMEOUT_S = int(os.getenv("HTTP_TIMEOUT_S", "30"))
	GITHUB_PAGE_SIZE = int(os.getenv("GITHUB_PAGE_SIZE", "100"))
	GITHUB_MAX_PAGES = int(os.getenv("GITHUB_MAX_PAGES", "50"))

	# Extraction
	EXTRACT_MAX_RETRIES = int(os.getenv("EXTRACT_MAX_RETRIES", "4"))
	EXTRACT_BACKOFF_BASE_S = float(os.getenv("EXTRACT_BACKOFF_BASE_S", "1.0"))
	EXTRACT_BACKOFF_MAX_S = float(os.getenv("EXTRACT_BACKOFF_MAX_S", "30"))
	RATE_LIMIT_MAX_WAITS = int(os.getenv("RATE_LIMIT_MAX_WAITS", "5"))
	RATE_LIMIT_MAX_WAIT_S = float(os.getenv("RATE_LIMIT_MAX_WAIT_S", "60"))

	# Classification
	CLASSIFIER_MODEL_FALLBACK = bool(int(os.getenv("CLASSIFIER_MODEL_FALLBACK", "1")))
	CLASSIFIER_MAX_TOKENS = int(os.getenv("CLASSIFIER_MAX_TOKENS", "20"))

	# Summarization
	PROMPT_TEMPLATE_VERSION = os.getenv("PROMPT_TEMPLATE_VERSION", "v1")
	PROMPTS_DIR = os.getenv("PROMPTS_DIR", os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "prompts"))
	SUMMARY_MAX_LENGTH = int(os.getenv("SUMMARY_MAX_LENGTH", "2000"))
	SUMMARY_MAX_ATTEMPTS = int(os.getenv("SUMMARY_MAX_ATTEMPTS", "3"))
	SUMMARY_BACKOFF_BASE_S = float(os.getenv("SUMMARY_BACKOFF_BASE_S", "0.5"))
	SUMMARY_BACKOFF_MAX_S = float(os.getenv("SUMMARY_BACKOFF_MAX_S", "8"))
	CONTEXT_TOP_K = int(os.getenv("CONTEXT_TOP_K", "3"))
	CONTEXT_MAX_CHARS = int(os.getenv("CONTEXT_MAX_CHARS", "1500"))
	NORMALIZE_COLLAPSE_SPACES = bool(int(os.getenv("NORMALIZE_COLLAPSE_SPACES", "1")))
	RENDER_EMPTY_PLACEHOLDER = bool(int(os.getenv("RENDER_EMPTY_PLACEHOLDER", "1")))

	# Persistence
	STORE_ROOT = os.getenv("STORE_ROOT", ".cache/release_notes/store")
	STORE_ATOMIC_WRITES = bool(int(os.getenv("STORE_ATOMIC_WRITES", "1")))

	# Runs
	RUN_QUEUE_MAX_DEPTH = int(os.getenv("RUN_QUEUE_MAX_DEPTH", "2"))
	RUN_MAX_WORKERS = int(os.getenv("RUN_MAX_WORKERS", "4"))
	EMBED_MAX_WORKERS = int(os.getenv("EMBED_MAX_WORKERS", "4"))

	# Publishing
	PUBLISH_MODE = os.getenv("PUBLISH_MODE", "outbox")  # outbox | github
	PUBLISH_OUTBOX_ROOT = os.getenv("PUBLISH_OUTBOX_ROOT", ".cache/release_notes/outbox")
	RELEASE_TAG_PREFIX = os.getenv("RELEASE_TAG_PREFIX", "release-notes-")
	RELEASE_AS_DRAFT = bool(int(os.getenv("RELEASE_AS_DRAFT", "1")))
	RELEASE_BACKUPS_ROOT = os.getenv("RELEASE_BACKUPS_ROOT", ".cache/release_notes/release_backups")
	RELEASE_BODY_MAX_CHARS = int(os.getenv("RELEASE_BODY_MAX_CHARS", "250000"))
	PUBLISH_RETRY_MAX = int(os.getenv("PUBLISH_RETRY_MAX", "2"))
	PUBLISH_RETRY_BASE_SLEEP = float(os.getenv("PUBLISH_RETRY_BASE_SLEEP", "0.5"))

	# Observability
	AUDIT_ROOT = os.getenv("AUDIT_ROOT", ".cache/release_notes/audit")
	METRICS_ROOT = os.getenv("METRICS_ROOT", ".cache/release_notes/metrics")
	METRICS_ENABLED = bool(int(os.getenv("METRICS_ENABLED", "1")))

	@classmethod
	def get_bedrock_config(cls) -> Dict[str, Any]:
		"""Get Bedrock configuration."""
		return {
			"region_name": cls.AWS_REGION,
			"model_id": cls.BEDROCK_MODEL_ID,
			"temperature": cls.BEDROCK_TEMPERATURE,
		}

	@classmethod
	def get_embedding_config(cls) -> Dict[str, Any]:
		return {
			"region_name": cls.AWS_REGION,
			"model_id": cls.EMBEDDING_MODEL_ID,
			"dimension": cls.EMBEDDING_DIM,
			"max_input_chars": cls.EMBED_MAX_INPUT_CHARS,
		}

	@classmethod
	def get_langsmith_config(cls) -> Dict[str, Any]:
		"""Get LangSmith configuration."""
		return {
			"api_key": cls.LANGSMITH_API_KEY,
			"project": cls.LANGSMITH_PROJECT,
			"endpoint": cls.LANGSMITH_ENDPOINT
		}

	@classmethod
	def get_github_config(cls) -> Dict[str, Any]:
		"""Get GitHub configuration for the REST client."""
		return {
			"base_url": cls.GITHUB_API_URL,
			"token": cls.GITHUB_TOKEN,
			"timeout_s": cls.HTTP_TIMEOUT_S,
			"page_size": cls.GITHUB_PAGE_SIZE,
			"max_pages": cls.GITHUB_MAX_PAGES,
		}

	@classmethod
	def get_extract_config(cls) -> Dict[str, Any]:
		"""Get extraction retry budgets.

		Returns:
			Mapping with retry count, backoff bounds and rate-limit wait bounds.
		"""
		return {
			"max_retries": cls.EXTRACT_MAX_RETRIES,
			"backoff_base_s": cls.EXTRACT_BACKOFF_BASE_S,
			"backoff_max_s": cls.EXTRACT_BACKOFF_MAX_S,
			"rate_limit_max_waits": cls.RATE_LIMIT_MAX_WAITS,
			"rate_limit_max_wait_s": cls.RATE_LIMIT_MAX_WAIT_S,
		}

	@classmethod
	def get_summary_config(cls) -> Dict[str, Any]:
		return {
			"template_version": cls.PROMPT_TEMPLATE_VERSION,
			"prompts_dir": cls.PROMPTS_DIR,
			"max_length": cls.SUMMARY_MAX_LENGTH,
			"max_attempts": cls.SUMMARY_MAX_ATTEMPTS,
			"backoff_base_s": cls.SUMMARY_BACKOFF_BASE_S,
			"backoff_max_s": cls.SUMMARY_BACKOFF_MAX_S,
			"top_k": cls.CONTEXT_TOP_K,
		}

	@classmethod
	def observability(cls) -> Dict[str, Any]:
		return {
			"metrics_root": cls.METRICS_ROOT,
			"metrics_enabled": cls.METRICS_ENABLED,
			"audit_root": cls.AUDIT_ROOT,
		}
