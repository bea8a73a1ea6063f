"""
Cosmos DB remote store.

Stores every table in one container partitioned by ``/table_id``; each
record is one item whose id is the (URL-quoted) record key.

Change feed:
    Cosmos DB does not report deletes on its change feed, so deletes are
    written as tombstones (``deleted: true``) with a short item TTL. Each
    subscribed table gets a polling task that compares ``_etag`` values
    against the last seen state and emits INSERT/UPDATE/DELETE events to
    every subscriber, the writer included.

Supports multiple authentication methods:
- Key-based authentication
- Azure AD via DefaultAzureCredential (recommended)
- Azure Managed Identity
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import quote

from azure.cosmos import PartitionKey
from azure.cosmos.aio import ContainerProxy, CosmosClient
from azure.cosmos.exceptions import CosmosHttpResponseError

from ..config import CosmosAuthMethod, CosmosSettings
from ..exceptions import AuthenticationError, ConfigurationError, RemoteUnavailableError
from ..protocol import ChangeHandler, RemoteStore, SubscriptionHandle
from ..types import ChangeEvent, ChangeKind, Record, normalize_key

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 1.0  # seconds

_READ_QUERY = (
    "SELECT * FROM c WHERE c.table_id = @table_id "
    "AND (NOT IS_DEFINED(c.deleted) OR c.deleted = false)"
)
_CHANGES_QUERY = "SELECT * FROM c WHERE c.table_id = @table_id AND c._ts >= @since"


def _get_credential(settings: CosmosSettings) -> Any:
    """Get the credential for the configured auth method.

    Raises:
        ConfigurationError: If the settings cannot produce a credential
    """
    if settings.auth_method == CosmosAuthMethod.KEY:
        if not settings.key:
            raise ConfigurationError("Cosmos key required for KEY authentication", field="key")
        return settings.key

    from azure.identity.aio import DefaultAzureCredential, ManagedIdentityCredential

    if settings.auth_method == CosmosAuthMethod.MANAGED_IDENTITY:
        # A client_id selects a user-assigned identity
        if settings.client_id:
            return ManagedIdentityCredential(client_id=settings.client_id)
        return ManagedIdentityCredential()

    return DefaultAzureCredential()


def item_id(key: str) -> str:
    """Cosmos item ids may not contain '/', '\\', '?' or '#'."""
    return quote(normalize_key(key), safe="")


class CosmosRemoteStore(RemoteStore):
    """RemoteStore backed by Azure Cosmos DB."""

    def __init__(
        self,
        settings: CosmosSettings,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
    ) -> None:
        if not settings.endpoint:
            raise ConfigurationError("Cosmos endpoint is not configured", field="endpoint")

        self.settings = settings
        self.max_retries = max_retries
        self.retry_delay = retry_delay

        self._credential: Any = None
        self._client: CosmosClient | None = None
        self._container: ContainerProxy | None = None
        self._init_lock = asyncio.Lock()

        self._subscribers: dict[str, list[SubscriptionHandle]] = {}
        self._pollers: dict[str, asyncio.Task[None]] = {}

    async def initialize(self) -> None:
        """Connect and ensure the database and container exist."""
        async with self._init_lock:
            if self._container is not None:
                return
            try:
                self._credential = _get_credential(self.settings)
                self._client = CosmosClient(self.settings.endpoint, credential=self._credential)
                database = await self._client.create_database_if_not_exists(
                    id=self.settings.database
                )
                # default_ttl=-1 enables per-item TTL without expiring live records
                self._container = await database.create_container_if_not_exists(
                    id=self.settings.container,
                    partition_key=PartitionKey(path="/table_id"),
                    default_ttl=-1,
                )
                logger.info(
                    f"Connected to Cosmos DB {self.settings.database}/{self.settings.container}"
                )
            except CosmosHttpResponseError as e:
                await self._release_client()
                if e.status_code in (401, 403):
                    raise AuthenticationError(self.settings.endpoint or "cosmos", str(e)) from e
                raise RemoteUnavailableError("initialize", cause=e) from e

    async def write(self, table_id: str, key: str, payload: dict[str, Any]) -> None:
        container = await self._get_container()
        document = {
            "id": item_id(key),
            "table_id": table_id,
            "record_key": normalize_key(key),
            "payload": payload,
            "deleted": False,
        }
        await self._with_retry("write", table_id, lambda: container.upsert_item(body=document))

    async def read_all(self, table_id: str) -> list[Record]:
        documents = await self._query("read_all", table_id, _READ_QUERY, {"@table_id": table_id})
        return [_to_record(doc) for doc in documents]

    async def delete(self, table_id: str, key: str) -> None:
        container = await self._get_container()
        tombstone = {
            "id": item_id(key),
            "table_id": table_id,
            "record_key": normalize_key(key),
            "deleted": True,
            "ttl": self.settings.tombstone_ttl,
        }
        await self._with_retry("delete", table_id, lambda: container.upsert_item(body=tombstone))

    def subscribe(self, table_id: str, handler: ChangeHandler) -> SubscriptionHandle:
        """Subscribe to a table. Must be called from a running event loop."""
        handle = SubscriptionHandle(table_id=table_id, handler=handler)
        self._subscribers.setdefault(table_id, []).append(handle)
        if table_id not in self._pollers:
            self._pollers[table_id] = asyncio.get_running_loop().create_task(
                self._poll_changes(table_id)
            )
        return handle

    def unsubscribe(self, handle: SubscriptionHandle) -> None:
        handles = self._subscribers.get(handle.table_id, [])
        if handle not in handles:
            return
        handles.remove(handle)
        if not handles:
            poller = self._pollers.pop(handle.table_id, None)
            if poller:
                poller.cancel()

    async def close(self) -> None:
        pollers = list(self._pollers.values())
        self._pollers.clear()
        self._subscribers.clear()
        for poller in pollers:
            poller.cancel()
        if pollers:
            await asyncio.gather(*pollers, return_exceptions=True)
        await self._release_client()

    # Private

    async def _get_container(self) -> ContainerProxy:
        if self._container is None:
            await self.initialize()
        assert self._container is not None
        return self._container

    async def _release_client(self) -> None:
        if self._client is not None:
            await self._client.close()
        if self._credential is not None and hasattr(self._credential, "close"):
            await self._credential.close()
        self._client = None
        self._container = None
        self._credential = None

    async def _query(
        self,
        operation: str,
        table_id: str,
        query: str,
        parameters: dict[str, Any],
    ) -> list[dict[str, Any]]:
        container = await self._get_container()

        async def run() -> list[dict[str, Any]]:
            results: list[dict[str, Any]] = []
            async for item in container.query_items(
                query=query,
                parameters=[{"name": k, "value": v} for k, v in parameters.items()],
                partition_key=table_id,
            ):
                results.append(item)
            return results

        return await self._with_retry(operation, table_id, run)

    async def _with_retry(
        self,
        operation: str,
        table_id: str,
        call: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Run a Cosmos call, retrying throttling (429) and server errors (5xx)."""
        last_error: Exception | None = None

        for attempt in range(self.max_retries):
            try:
                return await call()
            except CosmosHttpResponseError as e:
                if e.status_code in (401, 403):
                    raise AuthenticationError(self.settings.endpoint or "cosmos", str(e)) from e
                if e.status_code != 429 and e.status_code < 500:
                    raise RemoteUnavailableError(operation, table_id, e) from e
                last_error = e
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(self.retry_delay * (2**attempt))
            except (OSError, asyncio.TimeoutError) as e:
                raise RemoteUnavailableError(operation, table_id, e) from e

        raise RemoteUnavailableError(operation, table_id, last_error)

    async def _poll_changes(self, table_id: str) -> None:
        known: dict[str, tuple[str, Record | None]] = {}
        since = 0
        baseline = True

        while True:
            try:
                documents = await self._query(
                    "poll_changes",
                    table_id,
                    _CHANGES_QUERY,
                    {"@table_id": table_id, "@since": since},
                )
                for doc in documents:
                    since = max(since, int(doc.get("_ts", 0)))
                    event = self._diff(table_id, doc, known)
                    if event is not None and not baseline:
                        self._dispatch(event)
                baseline = False
            except asyncio.CancelledError:
                raise
            except RemoteUnavailableError as e:
                logger.warning(f"Change feed poll failed for {table_id}: {e}")

            await asyncio.sleep(self.settings.poll_interval)

    @staticmethod
    def _diff(
        table_id: str,
        doc: dict[str, Any],
        known: dict[str, tuple[str, Record | None]],
    ) -> ChangeEvent | None:
        doc_id = doc["id"]
        etag = doc.get("_etag", "")
        previous = known.get(doc_id)
        if previous is not None and previous[0] == etag:
            return None

        old_record = previous[1] if previous else None
        if doc.get("deleted"):
            known[doc_id] = (etag, None)
            if old_record is None:
                return None
            return ChangeEvent(ChangeKind.DELETE, table_id, old_record=old_record)

        record = _to_record(doc)
        known[doc_id] = (etag, record)
        kind = ChangeKind.UPDATE if old_record is not None else ChangeKind.INSERT
        return ChangeEvent(kind, table_id, new_record=record, old_record=old_record)

    def _dispatch(self, event: ChangeEvent) -> None:
        for handle in list(self._subscribers.get(event.table_id, [])):
            try:
                handle.handler(event)
            except Exception:
                logger.exception(f"Change handler failed for {event.table_id}")


def _to_record(doc: dict[str, Any]) -> Record:
    return Record(key=doc.get("record_key") or doc["id"], payload=doc.get("payload") or {})
