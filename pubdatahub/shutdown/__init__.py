"""Graceful shutdown hooks, recovery handlers and persistent application state."""