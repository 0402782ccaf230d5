from outbox.handlers.base import HandlerRegistry

# Populated by the handler modules imported in outbox.handlers
registry = HandlerRegistry()
