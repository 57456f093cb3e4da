# ETL Tasks package
from analytics_engine.pipelines.tasks.extract import (
    Extractor,
    WarehouseLookupSource,
)
from analytics_engine.pipelines.tasks.load import (
    Loader,
    LoadResult,
    convert_to_json_serializable,
)

__all__ = [
    "Extractor",
    "WarehouseLookupSource",
    "Loader",
    "LoadResult",
    "convert_to_json_serializable",
]
