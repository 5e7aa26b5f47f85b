"""
Bus manager service package.

This package provides a FastAPI application for managing school buses,
students and their routes, with pluggable document storage (local files,
GitHub, S3-compatible buckets), Google Maps and Google Sheets adapters, and
a background worker for batch student-to-bus assignment.
"""
