"""ETL pipeline execution: transformations, extract/load tasks and the runner."""
