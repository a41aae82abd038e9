"""MySQL access through an SSH local port forward.

The enrolment database is only reachable from behind a bastion host. The
client opens an SSH connection, forwards a local port to the database and
talks MySQL over it. Readiness is explicit: ``forward_local_port`` returns
only once the listener is bound, and the MySQL session is verified with
``SELECT 1`` before the client reports itself connected.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import aiomysql
import asyncssh
import pymysql

from aularis.configuration.settings import TunnelSettings
from aularis.errors import QueryError, TunnelConnectionError

logger = logging.getLogger(__name__)

LOCAL_BIND_HOST = "127.0.0.1"

# MySQL client error codes meaning the server connection is gone
CONNECTION_LOST_CODES = frozenset({2003, 2006, 2013, 2055})

Connector = Callable[..., Awaitable[Any]]


def is_connection_lost(exc: BaseException) -> bool:
    """True when ``exc`` means the transport died rather than the statement failed."""
    if isinstance(exc, pymysql.err.OperationalError):
        return bool(exc.args) and exc.args[0] in CONNECTION_LOST_CODES
    return isinstance(
        exc,
        (
            pymysql.err.InterfaceError,
            ConnectionError,
            asyncio.IncompleteReadError,
            asyncssh.Error,
        ),
    )


class RemoteTunnelClient:
    """Per-process handle on the tunnelled database connection.

    ``execute_query`` connects lazily and, when the connection turns out to
    be dead, reconnects and retries exactly once. Concurrent callers share
    the connection and their statements run one after another.

    Usage:
        async with RemoteTunnelClient(settings.tunnel) as client:
            rows = await client.execute_query("SELECT 1 AS ok")
    """

    def __init__(
        self,
        settings: TunnelSettings,
        *,
        ssh_connect: Optional[Connector] = None,
        mysql_connect: Optional[Connector] = None,
    ) -> None:
        self._settings = settings
        self._ssh_connect = ssh_connect or asyncssh.connect
        self._mysql_connect = mysql_connect or aiomysql.connect
        self._ssh: Any = None
        self._listener: Any = None
        self._db: Any = None
        self._watcher: Optional[asyncio.Task] = None
        self._connected = False
        self._lock = asyncio.Lock()
        # One MySQL connection carries one statement at a time
        self._query_lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def local_port(self) -> Optional[int]:
        return self._listener.get_port() if self._listener is not None else None

    async def __aenter__(self) -> "RemoteTunnelClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    async def connect(self) -> None:
        """Open the tunnel and database session; no-op when already connected.

        Raises:
            TunnelConnectionError: Partial resources are closed before raising
        """
        async with self._lock:
            if self._connected:
                return
            # Leftovers from a connection the watcher saw die
            await self._teardown()
            timeout = self._settings.connect_timeout_seconds
            try:
                await asyncio.wait_for(self._open(), timeout=timeout)
            except asyncio.TimeoutError as exc:
                await self._teardown()
                raise TunnelConnectionError(
                    f"Tunnel not ready after {timeout}s",
                    details={"ssh_host": self._settings.ssh_host},
                ) from exc
            except TunnelConnectionError:
                await self._teardown()
                raise
            except Exception as exc:  # noqa: BLE001
                await self._teardown()
                raise TunnelConnectionError(
                    f"Cannot open tunnel: {exc}",
                    details={"ssh_host": self._settings.ssh_host},
                ) from exc

            self._connected = True
            self._watcher = asyncio.get_running_loop().create_task(self._watch(self._ssh))
            logger.info(
                "Tunnel connected",
                extra={"ssh_host": self._settings.ssh_host, "local_port": self.local_port},
            )

    async def _open(self) -> None:
        settings = self._settings
        ssh_options: Dict[str, Any] = {
            "port": settings.ssh_port,
            "username": settings.ssh_username or None,
            "known_hosts": str(settings.known_hosts_path) if settings.known_hosts_path else None,
        }
        if settings.ssh_private_key_path:
            ssh_options["client_keys"] = [str(settings.ssh_private_key_path.expanduser())]
        if settings.ssh_password is not None:
            ssh_options["password"] = settings.ssh_password.get_secret_value()

        self._ssh = await self._ssh_connect(settings.ssh_host, **ssh_options)
        self._listener = await self._ssh.forward_local_port(
            LOCAL_BIND_HOST, settings.local_port, settings.db_host, settings.db_port
        )
        self._db = await self._mysql_connect(
            host=LOCAL_BIND_HOST,
            port=self._listener.get_port(),
            user=settings.db_user,
            password=settings.db_password.get_secret_value(),
            db=settings.db_name,
            autocommit=True,
            connect_timeout=int(settings.connect_timeout_seconds),
        )
        rows = await self._run("SELECT 1 AS ok", None)
        if not rows:
            raise TunnelConnectionError("Database did not answer the health check")

    async def _watch(self, ssh: Any) -> None:
        try:
            await ssh.wait_closed()
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001
            logger.debug("SSH wait_closed raised", exc_info=True)
        if ssh is self._ssh and self._connected:
            self._connected = False
            logger.warning(
                "SSH connection closed unexpectedly", extra={"ssh_host": self._settings.ssh_host}
            )

    async def execute_query(
        self, statement: str, params: Optional[Sequence[Any] | Dict[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        """Run a statement and return its rows as dictionaries.

        Raises:
            TunnelConnectionError: The connection could not be (re)established
            QueryError: The statement itself failed
        """
        for attempt in (1, 2):
            await self.connect()
            try:
                return await self._run(statement, params)
            except Exception as exc:  # noqa: BLE001
                if is_connection_lost(exc):
                    if attempt == 1:
                        logger.warning(
                            "Connection lost, reconnecting once",
                            extra={"ssh_host": self._settings.ssh_host, "error": str(exc)},
                        )
                        await self.disconnect()
                        continue
                    raise TunnelConnectionError(
                        f"Connection lost again after reconnect: {exc}",
                        details={"ssh_host": self._settings.ssh_host},
                    ) from exc
                if isinstance(exc, pymysql.err.MySQLError):
                    raise QueryError(str(exc), details={"statement": statement[:200]}) from exc
                raise
        raise TunnelConnectionError("Unreachable")  # pragma: no cover

    async def _run(
        self, statement: str, params: Optional[Sequence[Any] | Dict[str, Any]]
    ) -> List[Dict[str, Any]]:
        async with self._query_lock:
            async with self._db.cursor(aiomysql.DictCursor) as cursor:
                await cursor.execute(statement, params)
                rows = await cursor.fetchall()
        return list(rows or [])

    async def disconnect(self) -> None:
        """Close MySQL, then the forward, then SSH. Safe to call repeatedly."""
        async with self._lock:
            was_connected = self._connected
            await self._teardown()
            if was_connected:
                logger.info("Tunnel disconnected", extra={"ssh_host": self._settings.ssh_host})

    async def _teardown(self) -> None:
        self._connected = False
        watcher, self._watcher = self._watcher, None
        if watcher is not None and watcher is not asyncio.current_task():
            watcher.cancel()
            try:
                await watcher
            except asyncio.CancelledError:
                pass

        db, self._db = self._db, None
        if db is not None:
            try:
                db.close()
            except Exception:  # noqa: BLE001
                logger.debug("Error closing MySQL connection", exc_info=True)

        listener, self._listener = self._listener, None
        if listener is not None:
            try:
                listener.close()
                await listener.wait_closed()
            except Exception:  # noqa: BLE001
                logger.debug("Error closing port forward", exc_info=True)

        ssh, self._ssh = self._ssh, None
        if ssh is not None:
            try:
                ssh.close()
                await ssh.wait_closed()
            except Exception:  # noqa: BLE001
                logger.debug("Error closing SSH connection", exc_info=True)
