from .dispatcher import AlertContext, AlertDispatcher

__all__ = ["AlertContext", "AlertDispatcher"]
