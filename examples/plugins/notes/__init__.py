"""Notes plugin: stores short notes through the host memory capabilities.

Requires weather ^1.0, so it is loaded and activated after weather.
"""

from .store import NoteBook

PLUGIN_META = {
    "name": "notes",
    "version": "0.2.0",
    "description": "Keeps notes in host memory",
    "permissions": ["memory.read", "memory.write"],
    "dependencies": {"weather": "^1.0"},
}


def create_plugin():
    return NoteBook()
