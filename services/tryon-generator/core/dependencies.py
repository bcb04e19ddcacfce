from functools import lru_cache

# Implementations
from connections.local_tryon_gateway import LocalTryOnGateway
from connections.vertex_tryon_gateway import VertexTryOnGateway
from core.config import LocalSettings, ProductionSettings, settings
from domain.interfaces import GenerationGateway, RequestStore
from processors.image_normalizer import ImageNormalizer
from repository.in_memory_repository import InMemoryRequestStore
from services.tryon_orchestrator import TryOnOrchestrator


@lru_cache()
def get_store() -> RequestStore:
    """
    Dependency Factory: Returns the request store.
    Cached so every request of the process shares one store.
    """
    return InMemoryRequestStore(
        max_entries=settings.STORE_MAX_ENTRIES,
        ttl_seconds=settings.STORE_TTL_SECONDS,
    )


@lru_cache()
def get_image_normalizer() -> ImageNormalizer:
    return ImageNormalizer(quality=settings.CANONICAL_JPEG_QUALITY)


@lru_cache()
def get_gateway() -> GenerationGateway:
    """
    Dependency Factory: Returns the try-on generation gateway based on ENV.
    """
    if isinstance(settings, ProductionSettings):
        return VertexTryOnGateway.from_settings(settings)

    render_size = settings.LOCAL_RENDER_SIZE if isinstance(settings, LocalSettings) else 512
    return LocalTryOnGateway(render_size=render_size)


@lru_cache()
def get_orchestrator() -> TryOnOrchestrator:
    return TryOnOrchestrator(
        gateway=get_gateway(),
        store=get_store(),
        image_normalizer=get_image_normalizer(),
        max_concurrency=settings.MAX_CONCURRENT_GENERATIONS,
        timeout=settings.GENERATION_TIMEOUT,
    )
