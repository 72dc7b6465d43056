"""
Bounded pool of warehouse query clients.

The pool holds no query logic. It only scopes the lifetime of clients so a
client is never shared between two in-flight callers and is always
returned, including on error paths::

    async with pool.connection() as client:
        rows = await client.query(sql, parameters)
"""

from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
import asyncio
import logging

from google.cloud import bigquery
from google.api_core.exceptions import BadRequest, GoogleAPICallError

from core.exceptions import (
    PoolClosedError,
    PoolExhaustedError,
    WarehouseConnectionError,
    WarehouseQueryError,
)

logger = logging.getLogger(__name__)


class WarehouseClient:
    """
    Async facade over ``google.cloud.bigquery.Client``.

    Jobs run on a worker thread so the event loop is never blocked while
    waiting for BigQuery.
    """

    def __init__(self, project_id: str, location: str = "US", client: Optional[bigquery.Client] = None):
        self.project_id = project_id
        self.location = location
        self.client = client or bigquery.Client(project=project_id, location=location)

    def _run_query(self, sql: str, parameters: Sequence[Tuple[str, str, Any]]) -> List[Dict[str, Any]]:
        job_config = bigquery.QueryJobConfig()
        if parameters:
            job_config.query_parameters = [
                bigquery.ScalarQueryParameter(name, type_, value)
                for name, type_, value in parameters
            ]

        job = self.client.query(sql, job_config=job_config)
        result = job.result()  # Wait for completion

        logger.debug(
            f"Warehouse query completed: {job.total_bytes_processed} bytes processed"
        )
        return [dict(row.items()) for row in result]

    async def query(
        self,
        sql: str,
        parameters: Sequence[Tuple[str, str, Any]] = (),
    ) -> List[Dict[str, Any]]:
        """
        Run a parameterized query and return its rows as dictionaries.

        Raises:
            WarehouseQueryError: The statement was rejected (400)
            WarehouseConnectionError: Transport or server-side failure
        """
        try:
            return await asyncio.to_thread(self._run_query, sql, parameters)
        except BadRequest as e:
            raise WarehouseQueryError(
                "Warehouse rejected the query",
                context={"project_id": self.project_id, "query_preview": sql[:200]},
                original_exception=e
            )
        except GoogleAPICallError as e:
            raise WarehouseConnectionError(
                "Warehouse call failed",
                context={"project_id": self.project_id, "location": self.location},
                original_exception=e
            )

    async def test_connection(self) -> bool:
        try:
            await self.query("SELECT 1")
            return True
        except (WarehouseQueryError, WarehouseConnectionError) as e:
            logger.warning(f"Warehouse connection test failed: {e.message}")
            return False

    def close(self) -> None:
        self.client.close()


class WarehouseConnectionPool:
    """
    Bounded set of warehouse clients with acquire/release scoping.

    - ``acquire()`` hands out an idle client, creates one while below
      ``max_clients``, or waits for a release up to ``acquire_timeout``
    - Idle clients failing their health check are replaced on acquire
    - ``close()`` disposes idle clients immediately and in-use clients
      when they are released
    """

    def __init__(
        self,
        client_factory: Callable[[], Any],
        max_clients: int = 5,
        acquire_timeout: float = 30.0,
        health_check: bool = True,
    ):
        if max_clients < 1:
            raise ValueError("max_clients must be at least 1")

        self.client_factory = client_factory
        self.max_clients = max_clients
        self.acquire_timeout = acquire_timeout
        self.health_check = health_check

        self._idle: List[Any] = []
        self._in_use: List[Any] = []
        self._total = 0
        self._closed = False
        self._condition = asyncio.Condition()

    @property
    def closed(self) -> bool:
        return self._closed

    async def acquire(self) -> Any:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.acquire_timeout
        reused = None

        async with self._condition:
            while True:
                if self._closed:
                    raise PoolClosedError("Connection pool is closed")

                if self._idle:
                    reused = self._idle.pop()
                    self._in_use.append(reused)
                    break

                if self._total < self.max_clients:
                    # Reserve the slot before creating outside the lock
                    self._total += 1
                    break

                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise PoolExhaustedError(
                        "Timed out waiting for a warehouse client",
                        context=self.get_pool_stats()
                    )
                try:
                    await asyncio.wait_for(self._condition.wait(), timeout=remaining)
                except asyncio.TimeoutError:
                    raise PoolExhaustedError(
                        "Timed out waiting for a warehouse client",
                        context=self.get_pool_stats()
                    )

        if reused is None:
            return await self._create_in_use()

        if self.health_check and not await reused.test_connection():
            logger.warning("Replacing unhealthy warehouse client")
            async with self._condition:
                self._in_use.remove(reused)
            self._dispose(reused)
            return await self._create_in_use()

        return reused

    async def _create_in_use(self) -> Any:
        """Create a client for an already reserved slot"""
        try:
            client = self.client_factory()
        except Exception as e:
            async with self._condition:
                self._total -= 1
                self._condition.notify()
            raise WarehouseConnectionError(
                "Failed to create warehouse client",
                original_exception=e
            )

        async with self._condition:
            self._in_use.append(client)
        logger.debug(f"Created warehouse client ({self._total}/{self.max_clients})")
        return client

    async def release(self, client: Any) -> None:
        async with self._condition:
            if client not in self._in_use:
                logger.warning("Released a client that is not checked out of this pool")
                return

            self._in_use.remove(client)
            if self._closed:
                self._total -= 1
                self._dispose(client)
            else:
                self._idle.append(client)
            self._condition.notify()

    @asynccontextmanager
    async def connection(self):
        client = await self.acquire()
        try:
            yield client
        finally:
            await self.release(client)

    async def close(self) -> None:
        async with self._condition:
            self._closed = True
            idle, self._idle = self._idle, []
            self._total -= len(idle)
            self._condition.notify_all()

        for client in idle:
            self._dispose(client)

        logger.info(f"Warehouse pool closed ({len(self._in_use)} clients still in use)")

    def get_pool_stats(self) -> Dict[str, int]:
        return {
            "total": self._total,
            "in_use": len(self._in_use),
            "idle": len(self._idle),
            "max_clients": self.max_clients,
        }

    def _dispose(self, client: Any) -> None:
        try:
            client.close()
        except Exception as e:
            logger.warning(f"Error closing warehouse client: {e}")
