"""
Job execution: retry policies, resource locks, delayed scheduling and the
Celery task entry points (``dockyard.execution.tasks``).
"""
