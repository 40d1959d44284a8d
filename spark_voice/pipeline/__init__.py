"""Per-request pipeline modules for the Spark relay.

Each module handles one kind of client request end to end; the WebSocket
handler in ``main.py`` only parses messages and dispatches here.
"""
