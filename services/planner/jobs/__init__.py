"""
Batch jobs for the planner service.

These run as standalone Python scripts, NOT inside the FastAPI process.

Usage:
    python -m services.planner.jobs.apply_schedule --trip-id <trip>
"""
