"""
Parcelflow - ETL orchestration for property valuation data

Extracts parcel and assessment records from registered data sources, runs
them through configurable transformation rules and a data quality stage,
and loads them into target sources on a schedule.
"""

__version__ = "1.0.0"
