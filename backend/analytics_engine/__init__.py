"""Tenant analytics engine: ETL pipelines and cached warehouse queries."""
