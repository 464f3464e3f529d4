"""
Columnar Codec
==============
Encodes flat record batches as Parquet (via pyarrow) and decodes them back.

Field kinds:
    - integers / timestamps and UTF-8 strings map to native Arrow columns;
    - dict / list values are stored as JSON strings;
    - numpy vectors are stored as packed little-endian float32 bytes.
JSON and vector columns are listed in the schema's key/value metadata so a
decode restores the original Python values.

Partition helpers (encode_partition / decode_partition) use a fixed schema
for VectorEntry rows and stamp the cluster id and dimensionality into the
file's key/value metadata, readable from the footer alone.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pyarrow as pa
import pyarrow.parquet as pq
from loguru import logger

from vectorlake.core.config import CodecConfig, SUPPORTED_COMPRESSIONS
from vectorlake.core.exceptions import DataCorruptionError, ValidationError

PARQUET_MAGIC = b"PAR1"

_JSON_COLUMNS_KEY = b"vectorlake.json_columns"
_VECTOR_COLUMNS_KEY = b"vectorlake.vector_columns"
_INTERNAL_KEYS = (_JSON_COLUMNS_KEY, _VECTOR_COLUMNS_KEY, b"ARROW:schema")

PARTITION_CLUSTER_KEY = "partition.cluster_id"
PARTITION_DIMENSIONALITY_KEY = "partition.dimensionality"

PARTITION_SCHEMA = pa.schema([
    pa.field("id", pa.string(), nullable=False),
    pa.field("source_table", pa.string()),
    pa.field("source_rowid", pa.int64()),
    pa.field("ns", pa.string()),
    pa.field("type", pa.string()),
    pa.field("text_content", pa.string()),
    pa.field("metadata", pa.string()),
    pa.field("embedding", pa.binary()),
    pa.field("created_at", pa.int64()),
])

# Metadata keys promoted to their own partition columns
_PROMOTED_KEYS = ("ns", "type", "text_content")


@dataclass
class VectorEntry:
    """Full-precision record stored in warm/cold partitions."""
    id: str
    embedding: np.ndarray
    source_table: str = "things"
    source_rowid: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[int] = None


@dataclass
class ColumnarMetadata:
    row_count: int
    row_group_count: int
    schema: List[Tuple[str, str]]
    file_size: int
    compression: str
    key_value_metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class SerializeResult:
    data: bytes
    metadata: ColumnarMetadata


def _check_compression(compression: str, level: Optional[int]) -> None:
    if compression not in SUPPORTED_COMPRESSIONS:
        raise ValidationError(
            "compression", f"unsupported codec, expected one of {SUPPORTED_COMPRESSIONS}", value=compression
        )
    if compression == "zstd" and level is not None and not 1 <= level <= 22:
        raise ValidationError("compression_level", "zstd level must be between 1 and 22", value=level)


def _check_magic(data: bytes) -> None:
    if len(data) < 12 or data[:4] != PARQUET_MAGIC or data[-4:] != PARQUET_MAGIC:
        raise DataCorruptionError("columnar", "Invalid magic bytes: not a Parquet buffer")


class ColumnarCodec:
    def __init__(self, config: Optional[CodecConfig] = None):
        self.config = config or CodecConfig()
        _check_compression(self.config.compression, self.config.compression_level)

    # ------------------------------------------------------------------
    # Generic records
    # ------------------------------------------------------------------

    def serialize(
        self,
        records: Sequence[Mapping[str, Any]],
        compression: Optional[str] = None,
        compression_level: Optional[int] = None,
        row_group_size: Optional[int] = None,
        key_value_metadata: Optional[Mapping[str, str]] = None,
        schema: Optional[pa.Schema] = None,
    ) -> SerializeResult:
        """
        Encode ``records`` into a Parquet buffer.

        Column order follows first appearance across records; missing values
        become nulls. An empty batch needs an explicit ``schema``.
        """
        compression = compression or self.config.compression
        if compression_level is None and compression == self.config.compression:
            compression_level = self.config.compression_level
        _check_compression(compression, compression_level)
        row_group_size = row_group_size or self.config.row_group_size
        if row_group_size <= 0:
            raise ValidationError("row_group_size", "must be positive", value=row_group_size)

        table = self._to_table(records, schema)
        if key_value_metadata:
            merged = dict(table.schema.metadata or {})
            merged.update({k.encode(): str(v).encode() for k, v in key_value_metadata.items()})
            table = table.replace_schema_metadata(merged)

        sink = pa.BufferOutputStream()
        pq.write_table(
            table,
            sink,
            compression=compression,
            compression_level=compression_level if compression == "zstd" else None,
            row_group_size=row_group_size,
        )
        data = sink.getvalue().to_pybytes()
        return SerializeResult(data=data, metadata=self.get_metadata(data))

    def _to_table(self, records: Sequence[Mapping[str, Any]], schema: Optional[pa.Schema]) -> pa.Table:
        if not records:
            if schema is None:
                raise ValidationError("records", "cannot serialize an empty batch without a schema")
            return schema.empty_table()

        columns: List[str] = list(schema.names) if schema is not None else []
        if schema is None:
            seen = set()
            for record in records:
                for key in record:
                    if key not in seen:
                        seen.add(key)
                        columns.append(key)

        json_cols: List[str] = []
        vector_cols: List[str] = []
        arrays: Dict[str, List[Any]] = {}
        for name in columns:
            values = [record.get(name) for record in records]
            sample = next((v for v in values if v is not None), None)
            if isinstance(sample, np.ndarray):
                vector_cols.append(name)
                values = [None if v is None else np.asarray(v, dtype="<f4").tobytes() for v in values]
            elif isinstance(sample, (dict, list)):
                json_cols.append(name)
                values = [None if v is None else json.dumps(v) for v in values]
            arrays[name] = values

        metadata = {
            _JSON_COLUMNS_KEY: json.dumps(json_cols).encode(),
            _VECTOR_COLUMNS_KEY: json.dumps(vector_cols).encode(),
        }
        try:
            if schema is not None:
                return pa.Table.from_pydict(arrays, schema=schema.with_metadata(metadata))
            return pa.Table.from_pydict(arrays).replace_schema_metadata(metadata)
        except (pa.ArrowInvalid, pa.ArrowTypeError) as e:
            raise ValidationError("records", f"cannot build columnar table: {e}") from e

    def _open(self, data: bytes) -> pq.ParquetFile:
        _check_magic(data)
        try:
            return pq.ParquetFile(pa.BufferReader(data))
        except (pa.ArrowException, OSError) as e:
            raise DataCorruptionError("columnar", f"Unreadable Parquet buffer: {e}") from e

    def deserialize(
        self,
        data: bytes,
        columns: Optional[List[str]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """Decode rows, optionally projecting ``columns`` and slicing [offset, offset+limit)."""
        pf = self._open(data)
        try:
            table = pf.read(columns=columns)
        except (pa.ArrowException, OSError) as e:
            raise DataCorruptionError("columnar", f"Failed to read rows: {e}") from e

        if offset or limit is not None:
            table = table.slice(offset, limit)

        schema_meta = pf.schema_arrow.metadata or {}
        json_cols = set(json.loads(schema_meta.get(_JSON_COLUMNS_KEY, b"[]")))
        vector_cols = set(json.loads(schema_meta.get(_VECTOR_COLUMNS_KEY, b"[]")))

        rows = table.to_pylist()
        if json_cols or vector_cols:
            for row in rows:
                for name in json_cols.intersection(row):
                    if row[name] is not None:
                        row[name] = json.loads(row[name])
                for name in vector_cols.intersection(row):
                    if row[name] is not None:
                        row[name] = np.frombuffer(row[name], dtype="<f4").copy()
        return rows

    def get_metadata(self, data: bytes) -> ColumnarMetadata:
        """File-level metadata from the footer; rows are not materialized."""
        pf = self._open(data)
        meta = pf.metadata
        compression = "none"
        if meta.num_row_groups > 0 and meta.num_columns > 0:
            codec = meta.row_group(0).column(0).compression.lower()
            compression = "none" if codec == "uncompressed" else codec
        kv = {
            k.decode(): v.decode()
            for k, v in (pf.schema_arrow.metadata or {}).items()
            if k not in _INTERNAL_KEYS
        }
        return ColumnarMetadata(
            row_count=meta.num_rows,
            row_group_count=meta.num_row_groups,
            schema=[(f.name, str(f.type)) for f in pf.schema_arrow],
            file_size=len(data),
            compression=compression,
            key_value_metadata=kv,
        )

    # ------------------------------------------------------------------
    # Partitions
    # ------------------------------------------------------------------

    def encode_partition(
        self,
        entries: Iterable[VectorEntry],
        cluster_id: str,
        compression: Optional[str] = None,
    ) -> SerializeResult:
        entries = list(entries)
        dims = {int(np.asarray(e.embedding).shape[0]) for e in entries}
        if len(dims) > 1:
            raise ValidationError("embedding", f"mixed dimensionalities in one partition: {sorted(dims)}")

        records = []
        for e in entries:
            extra = {k: v for k, v in e.metadata.items() if k not in _PROMOTED_KEYS}
            records.append({
                "id": e.id,
                "source_table": e.source_table,
                "source_rowid": e.source_rowid,
                "ns": e.metadata.get("ns"),
                "type": e.metadata.get("type"),
                "text_content": e.metadata.get("text_content"),
                "metadata": json.dumps(extra),
                "embedding": np.asarray(e.embedding, dtype="<f4").tobytes(),
                "created_at": e.created_at,
            })

        result = self.serialize(
            records,
            compression=compression,
            schema=PARTITION_SCHEMA,
            key_value_metadata={
                PARTITION_CLUSTER_KEY: cluster_id,
                PARTITION_DIMENSIONALITY_KEY: str(dims.pop() if dims else 0),
            },
        )
        logger.debug(
            f"Encoded partition {cluster_id}: {len(entries)} rows, {result.metadata.file_size} bytes"
        )
        return result

    def decode_partition(self, data: bytes) -> List[VectorEntry]:
        entries = []
        for row in self.deserialize(data):
            metadata = json.loads(row.get("metadata") or "{}")
            for key in _PROMOTED_KEYS:
                if row.get(key) is not None:
                    metadata[key] = row[key]
            entries.append(VectorEntry(
                id=row["id"],
                embedding=np.frombuffer(row["embedding"], dtype="<f4").copy(),
                source_table=row.get("source_table") or "things",
                source_rowid=row.get("source_rowid"),
                metadata=metadata,
                created_at=row.get("created_at"),
            ))
        return entries


__all__ = [
    "PARQUET_MAGIC",
    "PARTITION_SCHEMA",
    "VectorEntry",
    "ColumnarMetadata",
    "SerializeResult",
    "ColumnarCodec",
]
