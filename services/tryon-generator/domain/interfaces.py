from abc import ABC, abstractmethod

from domain.models import GenerationRequest, GenerationResult


class GenerationGateway(ABC):
    @abstractmethod
    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """
        Runs one try-on generation for the request's (person, garment) pair.
        Must stay cancellable: the orchestrator cancels the awaiting task
        when a sibling unit fails or the fan-out times out.
        Raises GenerationError, with ``kind`` set when the provider
        reports a structured cause.
        """
        pass

    async def close(self) -> None:
        """Releases provider connections."""
        return None


class RequestStore(ABC):
    """Persists try-on requests and their results. Must be safe for concurrent use."""

    @abstractmethod
    async def save(self, request: GenerationRequest) -> None:
        pass

    @abstractmethod
    async def find_by_id(self, request_id: str) -> GenerationRequest:
        """Raises RequestNotFoundError when unknown."""
        pass

    @abstractmethod
    async def save_result(self, result: GenerationResult) -> None:
        pass

    @abstractmethod
    async def find_result_by_request_id(self, request_id: str) -> GenerationResult:
        """Raises RequestNotFoundError when no result exists for the request."""
        pass
