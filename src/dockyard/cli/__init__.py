"""``dockyard`` command line interface."""
