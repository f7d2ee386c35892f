"""
Data Source Registry

Catalog of the places jobs extract records from and load records into,
plus the connector contract the pipeline talks to.

Features:
- Data source registration (no deduplication by name)
- Kind-specific connectors: memory, file (JSON/JSONL/CSV), HTTP API, SQL database
- Availability probes that never raise
- Pluggable connector factories per source kind
- Connection blobs redacted before they are logged or serialized

Usage:
    from parcelflow.core.connectors import DataSourceRegistry
    from parcelflow.core.models import SourceKind

    registry = DataSourceRegistry()
    source = registry.register("assessor-api", SourceKind.API, {
        "url": "https://assessor.example.gov/parcels",
        "records_path": "data.parcels",
    })

    if await registry.check_availability(source.id):
        records = await registry.connector_for(source.id).extract()
"""
from __future__ import annotations

import abc
import asyncio
import copy
import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httpx
import pandas as pd
from sqlalchemy import create_engine, text
from sqlalchemy.engine import URL, Engine, make_url

from parcelflow.core.errors import ConnectorError, ResourceNotFoundError, ValidationError
from parcelflow.core.models import DataSource, SourceKind, new_id, utc_now
from parcelflow.core.store import InMemoryStore
from parcelflow.core.structured_logging import filter_sensitive_fields

logger = logging.getLogger(__name__)

Record = Dict[str, Any]


# =============================================================================
# Connector Contract
# =============================================================================

class Connector(abc.ABC):
    """Capability a data source supplies to the pipeline."""

    def __init__(self, source: DataSource, timeout: float = 30.0):
        self.source = source
        self.timeout = timeout

    @property
    def connection(self) -> Dict[str, Any]:
        return self.source.connection

    def get_source_name(self) -> str:
        return self.source.name

    @abc.abstractmethod
    async def check_availability(self) -> bool:
        """Liveness probe. May raise; the registry maps failures to False."""

    @abc.abstractmethod
    async def extract(self) -> List[Record]:
        """Read every record from the source."""

    @abc.abstractmethod
    async def load(self, records: List[Record]) -> int:
        """Write records to the source and return how many were written."""

    def close(self):
        """Release held resources."""


def _frame_to_records(df: pd.DataFrame) -> List[Record]:
    if df.empty:
        return []
    cleaned = df.astype(object).where(pd.notna(df), None)
    return cleaned.to_dict(orient="records")


# =============================================================================
# Built-in Connectors
# =============================================================================

class MemoryConnector(Connector):
    """
    Records held in the connection blob under ``records``.

    Used for staging data between jobs and in tests. ``available: false`` in
    the blob simulates an unreachable source.
    """

    async def check_availability(self) -> bool:
        return bool(self.connection.get("available", True))

    async def extract(self) -> List[Record]:
        return copy.deepcopy(self.connection.get("records", []))

    async def load(self, records: List[Record]) -> int:
        self.connection.setdefault("records", []).extend(copy.deepcopy(records))
        return len(records)


class FileConnector(Connector):
    """
    Local JSON, JSON-lines or CSV file.

    Connection: ``path`` and optional ``format`` (json, jsonl, csv; inferred
    from the suffix when omitted).
    """

    def __init__(self, source: DataSource, timeout: float = 30.0):
        super().__init__(source, timeout)
        if "path" not in self.connection:
            raise ValidationError("PFLW-1003", source=source.name, reason="missing 'path'")
        self.path = Path(self.connection["path"])
        self.format = self.connection.get("format") or self.path.suffix.lstrip(".").lower() or "json"
        if self.format not in ("json", "jsonl", "csv"):
            raise ValidationError(
                "PFLW-1003", source=source.name, reason=f"unsupported file format '{self.format}'"
            )

    async def check_availability(self) -> bool:
        if self.path.exists():
            return self.path.is_file()
        return self.path.parent.is_dir()

    async def extract(self) -> List[Record]:
        return await asyncio.to_thread(self._read)

    async def load(self, records: List[Record]) -> int:
        if not records:
            return 0
        await asyncio.to_thread(self._write, records)
        return len(records)

    def _read(self) -> List[Record]:
        if not self.path.exists() or self.path.stat().st_size == 0:
            return []
        if self.format == "csv":
            df = pd.read_csv(self.path)
        elif self.format == "jsonl":
            df = pd.read_json(self.path, lines=True, dtype=False, convert_dates=False)
        else:
            df = pd.read_json(self.path, orient="records", dtype=False, convert_dates=False)
        return _frame_to_records(df)

    def _write(self, records: List[Record]):
        if self.format == "csv":
            exists = self.path.exists() and self.path.stat().st_size > 0
            pd.DataFrame.from_records(records).to_csv(
                self.path, mode="a", header=not exists, index=False
            )
        elif self.format == "jsonl":
            with self.path.open("a", encoding="utf-8") as fh:
                for record in records:
                    fh.write(json.dumps(record, default=str) + "\n")
        else:
            existing = self._read()
            tmp = self.path.with_name(f".{self.path.name}.tmp")
            try:
                with tmp.open("w", encoding="utf-8") as fh:
                    json.dump(existing + list(records), fh, default=str)
                tmp.replace(self.path)
            finally:
                tmp.unlink(missing_ok=True)


class ApiConnector(Connector):
    """
    HTTP API: GET ``url`` to extract, POST ``load_url`` (or ``url``) to load.

    Connection: ``url``, optional ``load_url``, ``headers``, ``params``,
    ``api_key`` (sent as a bearer token) and ``records_path`` (dotted path
    to the record list inside the JSON response).
    """

    def __init__(
        self,
        source: DataSource,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(source, timeout)
        if "url" not in self.connection:
            raise ValidationError("PFLW-1003", source=source.name, reason="missing 'url'")
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        headers = dict(self.connection.get("headers", {}))
        if self.connection.get("api_key"):
            headers["Authorization"] = f"Bearer {self.connection['api_key']}"
        return httpx.AsyncClient(
            timeout=self.timeout,
            headers=headers,
            transport=self._transport,
        )

    async def check_availability(self) -> bool:
        async with self._client() as client:
            response = await client.head(self.connection["url"])
            if response.status_code == 405:
                response = await client.get(self.connection["url"])
            return response.status_code < 400

    async def extract(self) -> List[Record]:
        try:
            async with self._client() as client:
                response = await client.get(
                    self.connection["url"], params=self.connection.get("params")
                )
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPError as e:
            raise ConnectorError("PFLW-6002", source=self.get_source_name(), reason=str(e))
        return self._records_from(payload)

    async def load(self, records: List[Record]) -> int:
        if not records:
            return 0
        url = self.connection.get("load_url") or self.connection["url"]
        try:
            async with self._client() as client:
                response = await client.post(url, json=records)
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise ConnectorError("PFLW-6003", source=self.get_source_name(), reason=str(e))
        return len(records)

    def _records_from(self, payload: Any) -> List[Record]:
        path = self.connection.get("records_path")
        if path:
            for key in path.split("."):
                if not isinstance(payload, dict) or key not in payload:
                    raise ConnectorError(
                        "PFLW-6002",
                        source=self.get_source_name(),
                        reason=f"records_path '{path}' not found in response",
                    )
                payload = payload[key]
        elif isinstance(payload, dict):
            for key in ("data", "results", "records", "items"):
                if isinstance(payload.get(key), list):
                    payload = payload[key]
                    break

        if isinstance(payload, dict):
            return [payload]
        if not isinstance(payload, list):
            raise ConnectorError(
                "PFLW-6002",
                source=self.get_source_name(),
                reason=f"expected a list of records, got {type(payload).__name__}",
            )
        return payload


class DatabaseConnector(Connector):
    """
    SQL database through SQLAlchemy.

    Connection: ``url`` (SQLAlchemy URL), ``query`` or ``table`` for extract,
    ``target_table`` (defaults to ``table``) for load, optional ``connect_args``
    passed to the driver. The connector timeout becomes the driver's connect timeout.
    """

    def __init__(self, source: DataSource, timeout: float = 30.0):
        super().__init__(source, timeout)
        if "url" not in self.connection:
            raise ValidationError("PFLW-1003", source=source.name, reason="missing 'url'")
        self._engine: Optional[Engine] = None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            url = make_url(self.connection["url"])
            self._engine = create_engine(url, pool_pre_ping=True, connect_args=self.connect_args(url))
        return self._engine

    def connect_args(self, url: URL) -> Dict[str, Any]:
        """Driver arguments bounding how long a connection attempt may block."""
        args = dict(self.connection.get("connect_args") or {})
        backend = url.get_backend_name()
        if backend == "sqlite":
            args.setdefault("timeout", self.timeout)
        elif backend in ("postgresql", "mysql", "mariadb"):
            args.setdefault("connect_timeout", max(1, int(self.timeout)))
        return args

    async def check_availability(self) -> bool:
        return await asyncio.to_thread(self._ping)

    async def extract(self) -> List[Record]:
        return await asyncio.to_thread(self._select)

    async def load(self, records: List[Record]) -> int:
        if not records:
            return 0
        return await asyncio.to_thread(self._insert, records)

    def close(self):
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None

    def _ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    def _select(self) -> List[Record]:
        query = self.connection.get("query")
        if not query:
            table = self.connection.get("table")
            if not table:
                raise ValidationError(
                    "PFLW-1003", source=self.get_source_name(), reason="missing 'query' or 'table'"
                )
            query = f'SELECT * FROM "{table}"'
        with self.engine.connect() as conn:
            rows = conn.execute(text(query), self.connection.get("params", {}))
            return [dict(row) for row in rows.mappings()]

    def _insert(self, records: List[Record]) -> int:
        table = self.connection.get("target_table") or self.connection.get("table")
        if not table:
            raise ValidationError(
                "PFLW-1003", source=self.get_source_name(), reason="missing 'target_table'"
            )
        df = pd.DataFrame.from_records(records)
        df.to_sql(table, self.engine, if_exists="append", index=False)
        return len(df)


ConnectorFactory = Callable[[DataSource], Connector]

BUILTIN_CONNECTORS: Dict[SourceKind, type] = {
    SourceKind.MEMORY: MemoryConnector,
    SourceKind.FILE: FileConnector,
    SourceKind.API: ApiConnector,
    SourceKind.DATABASE: DatabaseConnector,
}


# =============================================================================
# Registry
# =============================================================================

class DataSourceRegistry:
    """Owns data sources and hands out their connectors."""

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout
        self._sources: InMemoryStore[DataSource] = InMemoryStore("sources")
        self._factories: Dict[SourceKind, ConnectorFactory] = {}
        self._connectors: Dict[str, Connector] = {}

    def register_connector_factory(self, kind: SourceKind, factory: ConnectorFactory):
        """Plug in a custom connector for every source of ``kind``."""
        kind = SourceKind(kind)
        self._factories[kind] = factory
        for source_id in [sid for sid, c in self._connectors.items() if c.source.kind == kind]:
            self._connectors.pop(source_id).close()
        logger.info(f"Registered connector factory for {kind.value} sources")

    def register(
        self,
        name: str,
        kind: SourceKind,
        connection: Optional[Dict[str, Any]] = None,
        description: str = "",
    ) -> DataSource:
        try:
            kind = SourceKind(kind)
        except ValueError:
            raise ValidationError("PFLW-1002", kind=kind)

        source = DataSource(
            id=new_id("src"),
            name=name,
            kind=kind,
            connection=dict(connection or {}),
            description=description,
        )
        self._sources.create(source)
        logger.info(
            f"Registered {kind.value} data source {source.id} ({name}): "
            f"{filter_sensitive_fields(source.connection)}"
        )
        return source

    def describe(self, source_id: str) -> Optional[DataSource]:
        return self._sources.get(source_id)

    def require(self, source_id: str) -> DataSource:
        source = self._sources.get(source_id)
        if source is None:
            raise ResourceNotFoundError("PFLW-2002", source_id=source_id)
        return source

    def list(self) -> List[DataSource]:
        return self._sources.list()

    def delete(self, source_id: str) -> bool:
        """Delete a source. Jobs still referencing it fail at run time."""
        connector = self._connectors.pop(source_id, None)
        if connector is not None:
            connector.close()
        deleted = self._sources.delete(source_id)
        if deleted:
            logger.info(f"Deleted data source {source_id}")
        return deleted

    def connector_for(self, source_id: str) -> Connector:
        """
        Connector for a registered source.

        Raises:
            ResourceNotFoundError: unknown source id
        """
        source = self.require(source_id)
        connector = self._connectors.get(source_id)
        if connector is None:
            factory = self._factories.get(source.kind)
            if factory is not None:
                connector = factory(source)
            else:
                connector = BUILTIN_CONNECTORS[source.kind](source, timeout=self.timeout)
            self._connectors[source_id] = connector
        return connector

    async def check_availability(self, source_id: str) -> bool:
        """Probe a source. Never raises; failures map to False."""
        try:
            connector = self.connector_for(source_id)
            available = bool(await connector.check_availability())
        except Exception as e:
            logger.warning(f"Availability check failed for source {source_id}: {e}")
            available = False

        if not available and source_id in self._sources:
            self._sources.update(source_id, connected=False)
        return available

    async def connect(self, source_id: str) -> bool:
        self.require(source_id)
        available = await self.check_availability(source_id)
        if available:
            self._sources.update(source_id, connected=True, last_connected_at=utc_now())
            logger.info(f"Connected data source {source_id}")
        return available

    def disconnect(self, source_id: str) -> bool:
        if self._sources.update(source_id, connected=False) is None:
            return False
        connector = self._connectors.pop(source_id, None)
        if connector is not None:
            connector.close()
        logger.info(f"Disconnected data source {source_id}")
        return True
