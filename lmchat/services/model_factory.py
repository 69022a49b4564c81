"""Model factories: load and cache model containers by identifier."""

import asyncio
import logging
from typing import Awaitable, Dict, List, Optional, Union
from pydantic import ValidationError as PydanticValidationError
from transformers import AutoModelForCausalLM, AutoModelForImageTextToText

from lmchat.config import settings
from lmchat.schemas.chat_models import ModelConfiguration, ModelKind
from lmchat.schemas.error_models import LoadError
from lmchat.services.model_container import ModelContainer


logger = logging.getLogger(__name__)


class ModelFactory:
    """Loads model containers and caches them per identifier and revision.

    Loads of the same identifier are serialized, so concurrent callers share
    one container. Failed loads are not cached and may be retried.
    """

    kind = ModelKind.LLM
    model_class = AutoModelForCausalLM
    load_processor = False

    def __init__(self):
        self._containers: Dict[str, ModelContainer] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def default_model_id(self) -> str:
        return settings.llm_model_id

    def _resolve_configuration(
        self,
        configuration: Union[ModelConfiguration, str, None]
    ) -> ModelConfiguration:
        if isinstance(configuration, ModelConfiguration):
            return configuration

        model_id = configuration if configuration is not None else self.default_model_id
        if not isinstance(model_id, str):
            raise LoadError(f"Unsupported model identifier: {model_id!r}")
        try:
            return ModelConfiguration(id=model_id, revision=settings.model_revision)
        except PydanticValidationError as e:
            raise LoadError(f"Unsupported model identifier: {model_id!r}", model_id=model_id) from e

    def create_container(self, configuration: ModelConfiguration) -> ModelContainer:
        """Create an unloaded container for ``configuration``."""
        return ModelContainer(
            configuration,
            kind=self.kind,
            model_class=self.model_class,
            load_processor=self.load_processor
        )

    async def load_container(
        self,
        configuration: Union[ModelConfiguration, str, None] = None
    ) -> ModelContainer:
        """Load a model, returning the cached container when already loaded.

        Args:
            configuration: Model configuration or identifier; defaults to the
                configured model id for this factory

        Returns:
            A loaded ``ModelContainer``

        Raises:
            LoadError: If the identifier is unsupported or loading fails
        """
        configuration = self._resolve_configuration(configuration)
        key = configuration.cache_key

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            container = self._containers.get(key)
            if container is not None and container.is_loaded():
                logger.debug(f"Using cached container for {key}")
                return container

            container = self.create_container(configuration)
            await container.load()
            self._containers[key] = container
            logger.info(f"Container ready for {key}")
            return container

    def get_container(self, model_id: str) -> Optional[ModelContainer]:
        """Return a cached container by identifier (or ``id@revision`` key)."""
        container = self._containers.get(model_id)
        if container is not None:
            return container
        for candidate in self._containers.values():
            if candidate.configuration.id == model_id:
                return candidate
        return None

    @property
    def containers(self) -> List[ModelContainer]:
        return list(self._containers.values())

    async def unload_all(self) -> None:
        """Unload every cached container and clear the cache."""
        containers = list(self._containers.values())
        self._containers.clear()
        # Keep locks held by loads still in flight
        self._locks = {key: lock for key, lock in self._locks.items() if lock.locked()}
        for container in containers:
            await container.unload()
        logger.info(f"Unloaded {len(containers)} containers")


class LLMModelFactory(ModelFactory):
    """Factory for text-only causal language models."""

    kind = ModelKind.LLM
    model_class = AutoModelForCausalLM
    load_processor = False


class VLMModelFactory(ModelFactory):
    """Factory for vision-language models."""

    kind = ModelKind.VLM
    model_class = AutoModelForImageTextToText
    load_processor = True

    @property
    def default_model_id(self) -> str:
        return settings.vlm_model_id


async def wait_for_containers(
    *loads: Awaitable[ModelContainer],
    timeout: Optional[float] = None
) -> List[ModelContainer]:
    """Run container loads concurrently, bounded by ``timeout``.

    Args:
        loads: Awaitables such as ``factory.load_container(...)``
        timeout: Seconds to wait, defaults to ``settings.load_timeout``

    Returns:
        Loaded containers in argument order

    Raises:
        LoadError: If any load fails or the timeout expires
    """
    if timeout is None:
        timeout = settings.load_timeout
    try:
        containers = await asyncio.wait_for(asyncio.gather(*loads), timeout)
    except asyncio.TimeoutError as e:
        logger.error(f"Models not ready within {timeout:.0f}s")
        raise LoadError(f"Models not ready within {timeout:.0f}s") from e
    return list(containers)
