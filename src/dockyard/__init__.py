"""
Dockyard - job and orchestration core of a self-hosted PaaS control plane.

Subpackages:
- dockyard.core: logging, errors, settings, cache, events, shared records
- dockyard.persistence: repository protocols and in-memory stores
- dockyard.execution: retry policies, resource locks, Celery tasks
- dockyard.remote: remote command execution (ssh / local)
- dockyard.deploy: deployment state machine, health monitor, canary controller
- dockyard.provisioning: resource thresholds and auto-provisioning
- dockyard.backup: backup, restore and restore-test pipelines
- dockyard.transfer: resource transfer pipeline
- dockyard.cli: the ``dockyard`` command
"""

__version__ = "0.3.0"
