import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Set

from models.db_models import Speaker
from models.schemas import MessageOut, PendingReply
from services import history
from services.errors import GenerationUnavailable, NoModelSelected
from services.events import BroadcastHub, Done, Subscription
from services.generator import GenerationClient
from services.prompt import build_prompt
from settings import settings

logger = logging.getLogger(__name__)


@dataclass
class _Turn:
    prompt: str
    model: str
    user_message: MessageOut
    reply_message_id: int
    position: int


class GenerationOrchestrator:
    """
    Runs one generation per accepted user message.

    The user message and an empty placeholder reply are committed together before
    the generator is started; a persistence writer then appends every streamed
    fragment to the placeholder until the generator reports completion.
    """

    def __init__(
        self,
        session_factory,
        hub: BroadcastHub,
        generator: GenerationClient,
        settle_interval: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.hub = hub
        self.generator = generator
        self.settle_interval = (
            settings.get_writer_settle_interval() if settle_interval is None else settle_interval
        )
        self._tasks: Set[asyncio.Task] = set()

    async def send_message(self, conversation_id: int, body: str) -> PendingReply:
        turn = await asyncio.to_thread(self._record_turn, conversation_id, body)

        # Subscribe before the generator starts, the hub does not replay
        subscription = self.hub.subscribe(maxsize=0)
        try:
            generation = await self.generator.start(
                turn.prompt, turn.model, turn.reply_message_id, conversation_id
            )
        except BaseException:
            # Covers cancellation too: nothing may outlive a turn that never started
            subscription.close()
            await asyncio.to_thread(self._discard_placeholder, turn.reply_message_id)
            raise

        self._track(generation)
        self._track(
            asyncio.create_task(
                self._persist_reply(subscription, generation, turn.reply_message_id),
                name=f"reply-writer-{turn.reply_message_id}",
            )
        )

        return PendingReply(
            conversation_id=conversation_id,
            user_message=turn.user_message,
            reply_message_id=turn.reply_message_id,
            position=turn.position,
        )

    def _record_turn(self, conversation_id: int, body: str) -> _Turn:
        with self.session_factory() as db:
            try:
                db_conv = history.require_conversation(db, conversation_id)
                user_message = history.add_message(db, conversation_id, Speaker.HUMAN, body)
                messages = history.list_messages(db, conversation_id)
                prompt = build_prompt(messages)
                reply = history.add_message(db, conversation_id, Speaker.MODEL, "")
                if db_conv.model is None:
                    raise NoModelSelected(conversation_id)
                turn = _Turn(
                    prompt=prompt,
                    model=db_conv.model.name,
                    user_message=MessageOut.model_validate(user_message),
                    reply_message_id=reply.id,
                    position=len(messages) + 1,
                )
                db.commit()
            except Exception:
                db.rollback()
                raise
        return turn

    def _discard_placeholder(self, message_id: int):
        with self.session_factory() as db:
            history.delete_message(db, message_id)

    def _append(self, message_id: int, text: str):
        with self.session_factory() as db:
            if not history.append_to_message(db, message_id, text):
                logger.debug("Reply %s no longer exists, dropping fragment", message_id)

    async def _persist_reply(self, subscription: Subscription, generation: asyncio.Task, message_id: int):
        def settled() -> bool:
            # Every event of a finished generation is already queued ahead of anything still to come
            if generation.done() and subscription.empty():
                logger.warning("Reply %s ended without completion, keeping the partial text", message_id)
                return True
            return False

        with subscription:
            while True:
                try:
                    event = await subscription.get(timeout=self.settle_interval)
                except asyncio.TimeoutError:
                    if settled():
                        return
                    continue

                if event is None:
                    return
                if event.message_id != message_id:
                    # Other replies keep the queue busy, so a timeout may never come
                    if settled():
                        return
                    continue
                if isinstance(event, Done):
                    logger.info("Reply %s complete", message_id)
                    return
                await asyncio.to_thread(self._append, message_id, event.text)

    def _track(self, task: asyncio.Task):
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background task %s failed", task.get_name(), exc_info=task.exception())

    async def wait_idle(self):
        """Wait until every in-flight generation and reply writer has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self):
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
