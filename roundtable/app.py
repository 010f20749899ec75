import os
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI

from roundtable.config import build_orchestrator, load_config, setup_logging
from roundtable.dispatch import BroadcastEventSink
from roundtable.llm import LLM
from roundtable.routes import router
from roundtable.storage import JsonStorage

load_dotenv(Path(__file__).parent.parent / ".env")

DEFAULT_DATA_DIR = Path(__file__).parent.parent / "data"


def create_app(data_dir: Path | None = None, llm: LLM | None = None) -> FastAPI:
    resolved = data_dir or Path(os.getenv("DATA_DIR", str(DEFAULT_DATA_DIR)))
    config = load_config(resolved / "config.json")
    setup_logging(config["log_level"])

    storage = JsonStorage(resolved)
    events = BroadcastEventSink()
    orchestrator = build_orchestrator(config, storage, llm=llm, events=events)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        # Let pending memory capture and notifications finish
        await orchestrator.dispatcher.drain()

    app = FastAPI(title="Roundtable", lifespan=lifespan)
    app.state.storage = storage
    app.state.events = events
    app.state.orchestrator = orchestrator
    app.include_router(router, prefix="/api")
    return app


# Default app instance for uvicorn (uses DATA_DIR env var or default)
app = create_app()
