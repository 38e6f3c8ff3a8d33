"""
Dynamic option data for form elements.

An element whose ``dynamicData`` binding is enabled gets its choices from an
external source instead of its static ``options``. Each bound element is
resolved independently: loading -> ready(options) | failed(error).

Fetches may finish out of order. Every resolution is stamped with a
per-element generation number; a result is committed only if no newer
resolution (or cancellation) happened for that element in the meantime.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import httpx
from pymongo.errors import PyMongoError

from intake_engine.config import settings
from intake_engine.errors import Diagnostic, DynamicFetchError, ErrorKind
from intake_engine.schemas import DynamicBinding, DynamicOption, Element

logger = logging.getLogger(__name__)


class ResolverStatus(str, Enum):
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class ResolverState:
    status: ResolverStatus
    generation: int
    options: Tuple[DynamicOption, ...] = ()
    error: Optional[str] = None


class OptionLookup(ABC):
    """
    Source of dynamic options.

    Given a binding (source, path, endpoint) return an ordered list of
    options, or raise DynamicFetchError. No pagination, no streaming.
    """

    @abstractmethod
    async def fetch(self, binding: DynamicBinding) -> List[DynamicOption]:
        pass


def dig(data: Any, path: str) -> Any:
    """Follow a dotted path ("profile.email") through nested mappings; None if absent."""
    current = data
    for part in [p for p in path.split(".") if p]:
        if not isinstance(current, Mapping) or part not in current:
            return None
        current = current[part]
    return current


def options_from_items(items: Any) -> List[DynamicOption]:
    """
    Convert raw items to options.

    Accepts {value, label}, {id, name} / {_id, title} style records or plain
    scalars (value and label are the same string).
    """
    if not isinstance(items, list):
        raise DynamicFetchError(f"Expected a list of options, got {type(items).__name__}")

    options = []
    for item in items:
        if isinstance(item, Mapping):
            value = next((item[k] for k in ("value", "id", "_id") if item.get(k) is not None), None)
            if value is None:
                raise DynamicFetchError(f"Option record has no value: {dict(item)!r}")
            label = next((item[k] for k in ("label", "name", "title") if item.get(k) is not None), value)
            options.append(DynamicOption(value=str(value), label=str(label)))
        elif item is not None:
            options.append(DynamicOption(value=str(item), label=str(item)))
    return options


class DefaultOptionLookup(OptionLookup):
    """
    Lookup used by the API.

    - custom:  GET the binding's endpoint; ``path`` selects the list inside a JSON object
    - service: read the MongoDB collection named by the first segment of ``path``
    - user:    read ``path`` from the respondent's profile mapping
    """

    def __init__(
        self,
        user_profile: Optional[Mapping[str, Any]] = None,
        database=None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
        base_url: Optional[str] = None,
    ):
        self.user_profile = user_profile or {}
        self._database = database
        self.http_client = http_client
        self.timeout = timeout if timeout is not None else settings.DYNAMIC_DATA_TIMEOUT
        self.base_url = base_url if base_url is not None else settings.DYNAMIC_DATA_BASE_URL

    @property
    def database(self):
        if self._database is None:
            from intake_engine.database import db

            self._database = db
        return self._database

    async def fetch(self, binding: DynamicBinding) -> List[DynamicOption]:
        if binding.source == "custom":
            return await self._fetch_custom(binding)
        if binding.source == "service":
            return await self._fetch_service(binding)
        return self._fetch_user(binding)

    def _url_for(self, endpoint: str) -> str:
        if self.base_url and "://" not in endpoint:
            return f"{self.base_url.rstrip('/')}/{endpoint.lstrip('/')}"
        return endpoint

    async def _get_json(self, url: str) -> Any:
        if self.http_client is not None:
            response = await self.http_client.get(url)
        else:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                response = await client.get(url)
        response.raise_for_status()
        return response.json()

    async def _fetch_custom(self, binding: DynamicBinding) -> List[DynamicOption]:
        if not binding.endpoint:
            raise DynamicFetchError("Custom dynamic data source has no endpoint")

        url = self._url_for(binding.endpoint)
        try:
            data = await self._get_json(url)
        except httpx.HTTPStatusError as e:
            raise DynamicFetchError(f"{url} returned {e.response.status_code}")
        except httpx.HTTPError as e:
            raise DynamicFetchError(f"Request to {url} failed: {e}")
        except ValueError as e:
            raise DynamicFetchError(f"{url} did not return JSON: {e}")

        if isinstance(data, Mapping) and binding.path:
            data = dig(data, binding.path)
        return options_from_items(data)

    async def _fetch_service(self, binding: DynamicBinding) -> List[DynamicOption]:
        collection_name = binding.path.split(".")[0]
        if not collection_name:
            raise DynamicFetchError("Service dynamic data source needs a path")

        try:
            docs = [doc async for doc in self.database[collection_name].find({})]
        except PyMongoError as e:
            raise DynamicFetchError(f"Could not read '{collection_name}': {e}")
        return options_from_items(docs)

    def _fetch_user(self, binding: DynamicBinding) -> List[DynamicOption]:
        value = dig(self.user_profile, binding.path)
        if value is None:
            return []
        if isinstance(value, list):
            return options_from_items(value)
        return options_from_items([value])


class DynamicDataResolver:
    """Tracks one resolution per bound element id."""

    def __init__(self, lookup: OptionLookup):
        self.lookup = lookup
        self.diagnostics: List[Diagnostic] = []
        self._states: Dict[str, ResolverState] = {}
        self._generations: Dict[str, int] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    def state(self, element_id: str) -> Optional[ResolverState]:
        return self._states.get(element_id)

    def _begin(self, element_id: str) -> int:
        generation = self._generations.get(element_id, 0) + 1
        self._generations[element_id] = generation
        self._states[element_id] = ResolverState(ResolverStatus.LOADING, generation)
        return generation

    def _commit(self, element_id: str, state: ResolverState) -> Optional[ResolverState]:
        if self._generations.get(element_id) != state.generation:
            logger.debug(f"Discarding stale dynamic data for '{element_id}' (generation {state.generation})")
            return None

        if state.status == ResolverStatus.FAILED:
            message = f"Dynamic data for '{element_id}' failed: {state.error}"
            logger.warning(message)
            self.diagnostics.append(Diagnostic(ErrorKind.DYNAMIC_FETCH_FAILED, message, element_id=element_id))
        self._states[element_id] = state
        return state

    async def _run(self, element_id: str, binding: DynamicBinding, generation: int) -> Optional[ResolverState]:
        try:
            options = await self.lookup.fetch(binding)
        except DynamicFetchError as e:
            state = ResolverState(ResolverStatus.FAILED, generation, error=e.message)
        except Exception as e:
            logger.exception(f"Unexpected error from option lookup for '{element_id}'")
            state = ResolverState(ResolverStatus.FAILED, generation, error=str(e) or type(e).__name__)
        else:
            state = ResolverState(ResolverStatus.READY, generation, options=tuple(options))
        return self._commit(element_id, state)

    async def resolve(self, element_id: str, binding: DynamicBinding) -> Optional[ResolverState]:
        """
        Resolve one element now. Returns the committed state, or None when the
        binding is disabled or the result went stale before it arrived.
        """
        if not binding.enabled:
            return None
        return await self._run(element_id, binding, self._begin(element_id))

    def start(self, element_id: str, binding: DynamicBinding) -> Optional[asyncio.Task]:
        """Schedule a resolution in the background, superseding any in flight."""
        if not binding.enabled:
            return None

        previous = self._tasks.pop(element_id, None)
        if previous is not None and not previous.done():
            previous.cancel()

        generation = self._begin(element_id)
        task = asyncio.ensure_future(self._run(element_id, binding, generation))
        self._tasks[element_id] = task
        task.add_done_callback(lambda t, eid=element_id: self._forget(eid, t))
        return task

    def _forget(self, element_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(element_id) is task:
            del self._tasks[element_id]

    def start_all(self, elements: Iterable[Element]) -> List[asyncio.Task]:
        tasks = []
        for element in elements:
            if element.is_dynamic:
                tasks.append(self.start(element.id, element.dynamicData))
        return tasks

    def cancel(self, element_ids: Iterable[str]) -> None:
        """Drop in-flight and finished results; late arrivals are discarded."""
        for element_id in element_ids:
            if element_id not in self._generations:
                continue
            self._generations[element_id] += 1
            task = self._tasks.pop(element_id, None)
            if task is not None and not task.done():
                task.cancel()
            self._states.pop(element_id, None)

    def cancel_all(self) -> None:
        self.cancel(list(self._generations))

    async def wait_idle(self) -> None:
        """Wait for every scheduled resolution to finish or be cancelled."""
        while True:
            pending = [task for task in self._tasks.values() if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def options_for(self, element: Element) -> List[DynamicOption]:
        """
        Choices to render. Static options unless the element is bound; a bound
        element shows nothing while loading or after a failure.
        """
        if not element.is_dynamic:
            return [DynamicOption(value=option.value, label=option.value) for option in element.options or []]
        state = self._states.get(element.id)
        if state is None or state.status != ResolverStatus.READY:
            return []
        return list(state.options)
