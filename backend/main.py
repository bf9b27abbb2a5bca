import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import sessionmaker

from database import Base, make_engine
from models import db_models  # CRITICAL: Ensures models are registered
from services import history
from services.errors import GenerationUnavailable
from services.events import BroadcastHub
from services.generator import GenerationClient
from services.orchestrator import GenerationOrchestrator
from settings import settings

logging.basicConfig(
    level=settings.get_log_level(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stderr,
)
logger = logging.getLogger(__name__)


def create_app(engine=None, generator: GenerationClient = None) -> FastAPI:
    """
    Build the application and its runtime context.

    One broadcast hub, one generation client and one orchestrator exist per app;
    handlers reach them through `app.state` rather than module globals.
    """
    # 1. Storage
    engine = engine if engine is not None else make_engine()
    Base.metadata.create_all(bind=engine)
    session_factory = sessionmaker(autoflush=False, bind=engine)

    # 2. Generation pipeline
    hub = generator.hub if generator is not None else BroadcastHub(backlog=settings.get_hub_backlog())
    generator = generator if generator is not None else GenerationClient(hub)
    orchestrator = GenerationOrchestrator(session_factory, hub, generator)

    async def refresh_models():
        try:
            names = await generator.list_models()
        except GenerationUnavailable as e:
            logger.warning("Model list not refreshed at startup: %s", e)
            return

        def store():
            with session_factory() as db:
                history.upsert_models(db, names)

        await asyncio.to_thread(store)
        logger.info("Known models refreshed: %s", ", ".join(names) or "none")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await refresh_models()
        yield
        await orchestrator.aclose()
        hub.close()
        await generator.aclose()

    # 3. App
    app = FastAPI(title="Chat Fork Backend", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Location", "HX-Redirect"],
    )
    app.state.session_factory = session_factory
    app.state.hub = hub
    app.state.generator = generator
    app.state.orchestrator = orchestrator

    # 4. Routers
    from routers import conversations, messages, models
    app.include_router(conversations.router)
    app.include_router(messages.router)
    app.include_router(models.router)

    @app.get("/")
    def read_root():
        return {"status": "Chat backend is running", "generator": generator.base_url}

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=3000)
