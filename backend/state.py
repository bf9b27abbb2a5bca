from fastapi import Request

from services.events import BroadcastHub
from services.generator import GenerationClient
from services.orchestrator import GenerationOrchestrator


def get_hub(request: Request) -> BroadcastHub:
    return request.app.state.hub


def get_generator(request: Request) -> GenerationClient:
    return request.app.state.generator


def get_orchestrator(request: Request) -> GenerationOrchestrator:
    return request.app.state.orchestrator
