"""Backend adapters, selected by the `backend` configuration value.

See backends.registry for the name -> adapter mapping.
"""

from backends.base import Backend, Endpoint, Node

__all__ = [
    'Backend',
    'Endpoint',
    'Node',
]
