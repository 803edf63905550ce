"""
dgrpc - request/reply invocation over unreliable datagrams.

This package provides at-least-once and at-most-once remote invocation
over UDP, with server-side duplicate suppression and time-bounded
subscriptions for pushed update notifications.
"""

__version__ = "1.0.0"
__author__ = "dgrpc Contributors"
