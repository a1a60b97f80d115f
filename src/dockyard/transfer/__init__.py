"""Resource transfer pipeline and the ``(type, id)`` loader registry."""
