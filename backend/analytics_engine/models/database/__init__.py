# Database models package
from analytics_engine.models.database.etl_jobs import ETLJobRun

__all__ = [
    "ETLJobRun",
]
