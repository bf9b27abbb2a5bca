import asyncio
import logging
import httpx
from pydantic import BaseModel, ValidationError
from typing import List, Optional

from services.errors import GenerationUnavailable
from services.events import BroadcastHub, Done, More
from settings import settings

logger = logging.getLogger(__name__)


class GenerateRecord(BaseModel):
    """One newline-delimited record of the generator's streaming response."""
    response: str
    done: bool


class ModelTag(BaseModel):
    name: str


class ModelTagList(BaseModel):
    models: List[ModelTag] = []


class GenerationClient:
    """
    Streams completions from an Ollama-compatible generator onto the broadcast hub.

    `start` opens the call in the caller, so an unreachable generator is reported
    right away; the body is then read by a background task that publishes `More`
    for every text fragment and a single `Done` when the generator says it is finished.
    """

    def __init__(
        self,
        hub: BroadcastHub,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        connect_timeout: Optional[float] = None,
        idle_timeout: Optional[float] = None,
    ):
        self.hub = hub
        self.base_url = (base_url or settings.get_generator_base_url()).rstrip("/")
        idle = settings.get_idle_timeout() if idle_timeout is None else idle_timeout
        connect = settings.get_connect_timeout() if connect_timeout is None else connect_timeout
        # The read timeout doubles as the idle timeout between streamed chunks
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            transport=transport,
            timeout=httpx.Timeout(idle, connect=connect),
        )

    async def start(self, prompt: str, model: str, message_id: int, conversation_id: int) -> asyncio.Task:
        request = self._client.build_request("POST", "/api/generate", json={"model": model, "prompt": prompt})
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            logger.error("Generator at %s is unreachable: %s", self.base_url, e)
            raise GenerationUnavailable(f"Generator at {self.base_url} is unreachable ({e})") from e

        if not response.is_success:
            try:
                error_msg = (await response.aread()).decode(errors="replace")[:200]
            except httpx.HTTPError as e:
                error_msg = f"unreadable error body ({e})"
            finally:
                await response.aclose()
            logger.error("Generator refused the request (%s): %s", response.status_code, error_msg)
            raise GenerationUnavailable(f"Generator returned {response.status_code}: {error_msg}")

        return asyncio.create_task(
            self._relay(response, message_id, conversation_id),
            name=f"generation-{message_id}",
        )

    async def _relay(self, response: httpx.Response, message_id: int, conversation_id: int) -> bool:
        """Publish the stream's events. Returns True when the generator signalled completion."""
        try:
            # aiter_lines reassembles records split across transport chunks
            async for line in response.aiter_lines():
                if not line.strip():
                    continue
                try:
                    record = GenerateRecord.model_validate_json(line)
                except ValidationError:
                    logger.warning("Skipping malformed generator line: %r", line[:200])
                    continue

                if record.response:
                    self.hub.publish(More(message_id=message_id, conversation_id=conversation_id, text=record.response))
                if record.done:
                    self.hub.publish(Done(message_id=message_id, conversation_id=conversation_id))
                    return True

            logger.warning("Generation for message %s ended without a completion record", message_id)
        except httpx.HTTPError as e:
            logger.warning("Generation for message %s failed mid-stream: %s", message_id, e)
        finally:
            await response.aclose()
        return False

    async def list_models(self) -> List[str]:
        try:
            resp = await self._client.get("/api/tags")
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("Could not list models from %s: %s", self.base_url, e)
            raise GenerationUnavailable(f"Could not list models from {self.base_url} ({e})") from e
        try:
            tags = ModelTagList.model_validate(resp.json())
        except (ValueError, ValidationError) as e:
            raise GenerationUnavailable(f"Unexpected model listing from {self.base_url} ({e})") from e
        return [m.name for m in tags.models]

    async def aclose(self):
        await self._client.aclose()
