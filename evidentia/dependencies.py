from typing import Optional

from fastapi import HTTPException, Request, status

from evidentia.config import settings
from evidentia.services.coordinator import PipelineCoordinator
from evidentia.services.model_client import ModelClient


class ModelClientProvider:
    """Lazily builds the shared model client on first use"""

    def __init__(self):
        self._client: Optional[ModelClient] = None

    def get(self) -> ModelClient:
        if self._client is None:
            self._client = ModelClient.from_settings(settings)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


async def get_client_provider(request: Request) -> ModelClientProvider:
    """Dependency to get the model client provider; call `get()` once input is validated"""
    return request.app.state.client_provider


async def get_coordinator(request: Request) -> PipelineCoordinator:
    """Dependency to get the pipeline coordinator"""
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Pipeline coordinator is not running."
        )
    return coordinator
