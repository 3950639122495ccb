from dishka import AsyncContainer, make_async_container

from eventcache.config import Config
from eventcache.infrastructure.di import EventCacheProvider


def create_container(config: Config | None = None) -> AsyncContainer:
    # Pydantic Settings populates from env vars at runtime
    if config is None:
        config = Config()

    return make_async_container(
        EventCacheProvider(),
        context={Config: config},
    )
