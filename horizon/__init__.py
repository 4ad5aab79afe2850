"""Backend package: DB models, processing state, pipelines, API.

This package imports horizon-scanning signals, runs the resumable
embedding -> candidate search -> Claude verification pipeline per project, and
exposes progress and trend summaries over HTTP.
"""
