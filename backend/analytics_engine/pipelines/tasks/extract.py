"""
Extract tasks for ETL pipelines.
"""
import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import httpx
import pandas as pd
from sqlalchemy import column, literal_column, select, table
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from analytics_engine.core.config import settings
from analytics_engine.core.exceptions import ExtractError
from analytics_engine.core.logging import get_logger
from analytics_engine.models.schemas.pipeline import (
    ApiSource,
    DatabaseSource,
    FileSource,
    PipelineDefinition,
)
from analytics_engine.pipelines.tasks.load import convert_to_json_serializable
from analytics_engine.pipelines.transformations import LookupSource

logger = get_logger(__name__)

Record = Dict[str, Any]

LOOKUP_CHUNK_SIZE = 1000


class Extractor:
    """Reads tenant records from a pipeline's source."""

    DEFAULT_RETRY_DELAY = 1  # seconds

    def __init__(
        self,
        source_engine: Optional[AsyncEngine] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
        retry_count: int = 3,
        retry_delay: float = DEFAULT_RETRY_DELAY,
    ):
        self.source_engine = source_engine
        self.http_client = http_client
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECONDS
        self.retry_count = retry_count
        self.retry_delay = retry_delay

    async def extract(self, pipeline: PipelineDefinition, since: Optional[datetime] = None) -> List[Record]:
        """
        Extract records for one run.

        Args:
            pipeline: Pipeline definition
            since: Watermark lower bound (exclusive); None means a full extract

        Returns:
            List of records

        Raises:
            ExtractError: on any I/O failure against the source
        """
        source = pipeline.source
        if since is not None and source.watermark_column is None:
            since = None

        mode = "incremental" if since else "full"
        logger.info(f"Extracting {source.kind} source for pipeline {pipeline.pipeline_id} ({mode})")

        if isinstance(source, DatabaseSource):
            records = await self._extract_database(source, pipeline.tenant_id, since)
        elif isinstance(source, ApiSource):
            records = await self._extract_api(source, since)
        else:
            records = await self._extract_file(source, since)

        logger.info(f"Extracted {len(records)} records for pipeline {pipeline.pipeline_id}")
        return records

    async def _extract_database(
        self,
        source: DatabaseSource,
        tenant_id: str,
        since: Optional[datetime],
    ) -> List[Record]:
        if self.source_engine is None:
            raise ExtractError("Database source configured but no source engine is available")

        records: List[Record] = []
        try:
            async with self.source_engine.connect() as conn:
                for table_name in source.tables:
                    stmt = (
                        select(literal_column("*"))
                        .select_from(table(table_name))
                        .where(column(source.tenant_column) == tenant_id)
                    )
                    if since is not None:
                        watermark = column(source.watermark_column)
                        stmt = stmt.where(watermark > since).order_by(watermark)
                    result = await conn.execute(stmt)
                    records.extend(dict(row) for row in result.mappings().all())
        except SQLAlchemyError as e:
            logger.error(f"Error extracting from tables {source.tables}: {e}")
            raise ExtractError(f"Database extract failed: {e}", cause=e) from e
        return records

    async def _extract_api(self, source: ApiSource, since: Optional[datetime]) -> List[Record]:
        params = dict(source.params)
        if since is not None and source.watermark_param:
            params[source.watermark_param] = since.isoformat()

        payload = await self._fetch_json(source, params)
        records = _resolve_path(payload, source.records_path)
        if not isinstance(records, list) or not all(isinstance(item, dict) for item in records):
            raise ExtractError(f"API response at '{source.records_path or '<root>'}' is not a list of objects")

        return _filter_since(records, source.watermark_column, since)

    async def _fetch_json(self, source: ApiSource, params: Dict[str, Any]) -> Any:
        last_exception: Optional[Exception] = None
        for attempt in range(self.retry_count + 1):
            try:
                if self.http_client is not None:
                    response = await self._send(self.http_client, source, params)
                else:
                    async with httpx.AsyncClient(timeout=self.timeout) as client:
                        response = await self._send(client, source, params)
                response.raise_for_status()
                return response.json()

            except httpx.HTTPStatusError as e:
                # Don't retry on client errors (4xx)
                if 400 <= e.response.status_code < 500:
                    logger.error(f"Client error fetching {source.url}: {e}")
                    raise ExtractError(f"API request to {source.url} failed: {e}", cause=e) from e
                last_exception = e
                logger.warning(f"HTTP error fetching {source.url} (attempt {attempt + 1}/{self.retry_count + 1}): {e}")

            except httpx.RequestError as e:
                last_exception = e
                logger.warning(f"Error fetching {source.url} (attempt {attempt + 1}/{self.retry_count + 1}): {e}")

            except ValueError as e:
                raise ExtractError(f"API response from {source.url} is not valid JSON", cause=e) from e

            if attempt < self.retry_count:
                await asyncio.sleep(self.retry_delay * (attempt + 1))

        logger.error(f"Failed to fetch {source.url} after {self.retry_count + 1} attempts")
        raise ExtractError(
            f"Failed to fetch data from {source.url} after {self.retry_count + 1} attempts: {last_exception}",
            cause=last_exception,
        )

    async def _send(self, client: httpx.AsyncClient, source: ApiSource, params: Dict[str, Any]) -> httpx.Response:
        if source.method == "POST":
            return await client.post(source.url, headers=source.headers, params=params, json=source.body)
        return await client.get(source.url, headers=source.headers, params=params)

    async def _extract_file(self, source: FileSource, since: Optional[datetime]) -> List[Record]:
        try:
            df = await asyncio.to_thread(_read_file, source)
        except (OSError, ValueError, pd.errors.ParserError) as e:
            logger.error(f"Error reading {source.path}: {e}")
            raise ExtractError(f"File extract from {source.path} failed: {e}", cause=e) from e

        records = [convert_to_json_serializable(record) for record in df.to_dict(orient="records")]
        return _filter_since(records, source.watermark_column, since)


class WarehouseLookupSource(LookupSource):
    """Enrichment lookups against operational tables, scoped to the tenant."""

    def __init__(self, engine: AsyncEngine, tenant_column: str = "tenant_id"):
        self.engine = engine
        self.tenant_column = tenant_column

    async def lookup(
        self,
        tenant_id: Optional[str],
        table_name: str,
        key_column: str,
        keys: Sequence[Any],
        fields: Sequence[str],
    ) -> Dict[Any, Record]:
        key = column(key_column)
        rows: Dict[Any, Record] = {}
        try:
            async with self.engine.connect() as conn:
                for start in range(0, len(keys), LOOKUP_CHUNK_SIZE):
                    chunk = list(keys[start:start + LOOKUP_CHUNK_SIZE])
                    stmt = (
                        select(key, *[column(name) for name in fields if name != key_column])
                        .select_from(table(table_name))
                        .where(key.in_(chunk))
                    )
                    if tenant_id is not None:
                        stmt = stmt.where(column(self.tenant_column) == tenant_id)
                    result = await conn.execute(stmt)
                    for row in result.mappings().all():
                        rows[row[key_column]] = dict(row)
        except SQLAlchemyError as e:
            raise ExtractError(f"Lookup against {table_name} failed: {e}", cause=e) from e
        return rows


def _read_file(source: FileSource) -> pd.DataFrame:
    if source.format == "csv":
        return pd.read_csv(source.path, encoding=source.encoding)
    return pd.read_json(source.path, orient="records", encoding=source.encoding)


def _resolve_path(payload: Any, path: Optional[str]) -> Any:
    """Follow a dotted path (``data.items``) into a decoded JSON payload."""
    if not path:
        return payload
    current = payload
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            raise ExtractError(f"Path '{path}' not found in API response")
        current = current[part]
    return current


def _filter_since(records: List[Record], watermark_column: Optional[str], since: Optional[datetime]) -> List[Record]:
    """Keep records whose watermark is strictly after ``since``."""
    if since is None or not watermark_column:
        return records
    newer = []
    for record in records:
        value = _as_datetime(record.get(watermark_column))
        if value is not None and value > since:
            newer.append(record)
    return newer


def _as_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
