"""Deployments: state machine, health monitor, canary rollout and rollback.

Import from the submodules (``dockyard.deploy.state_machine``,
``dockyard.deploy.monitor``, ``dockyard.deploy.canary``, ...).
"""
