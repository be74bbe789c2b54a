"""
Resilient key-value cache and job broker layer.

Sits in front of a Redis-compatible store and provides:
- A uniform cache/data-structure API that degrades to an in-process
  emulation when the remote store is unreachable
- A job broker (priority, delayed execution, retry with backoff,
  dead-lettering) built from primitive store operations
- Channel-based publish/subscribe fan-out

Architecture: ConnectionSupervisor -> StoreAdapter -> CacheFacade / Broker
"""

__version__ = "0.1.0"
