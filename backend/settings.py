import os


class Settings:
    # Default generator endpoint: a local Ollama-compatible service
    DEFAULT_GENERATOR_BASE_URL = "http://localhost:11434"
    DEFAULT_CONVERSATION_NAME = "a new conversation"

    def __init__(self):
        self._generator_base_url = os.environ.get(
            "GENERATOR_BASE_URL", self.DEFAULT_GENERATOR_BASE_URL
        ).rstrip("/")
        self._connect_timeout = float(os.environ.get("GENERATOR_CONNECT_TIMEOUT", "10"))
        self._idle_timeout = float(os.environ.get("GENERATOR_IDLE_TIMEOUT", "60"))
        self._hub_backlog = int(os.environ.get("HUB_BACKLOG", "10"))
        self._writer_settle_interval = float(os.environ.get("WRITER_SETTLE_INTERVAL", "1.0"))
        self._sse_keepalive = float(os.environ.get("SSE_KEEPALIVE", "15"))
        self._default_conversation_name = os.environ.get(
            "DEFAULT_CONVERSATION_NAME", self.DEFAULT_CONVERSATION_NAME
        )
        self._log_level = os.environ.get("LOG_LEVEL", "INFO").upper()

    def get_generator_base_url(self) -> str:
        """Returns the root URL of the text-generation service (e.g. 'http://localhost:11434')."""
        return self._generator_base_url

    def set_generator_base_url(self, url: str):
        self._generator_base_url = url.rstrip("/")

    def get_connect_timeout(self) -> float:
        return self._connect_timeout

    def get_idle_timeout(self) -> float:
        """Seconds a streaming read may stay silent before the generation counts as failed."""
        return self._idle_timeout

    def get_hub_backlog(self) -> int:
        return self._hub_backlog

    def get_writer_settle_interval(self) -> float:
        return self._writer_settle_interval

    def get_sse_keepalive(self) -> float:
        return self._sse_keepalive

    def get_default_conversation_name(self) -> str:
        return self._default_conversation_name

    def get_log_level(self) -> str:
        return self._log_level


settings = Settings()
