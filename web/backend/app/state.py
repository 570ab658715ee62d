"""The controller instance shared by all routers.

On first use the controller is built from ``$APPSET_CONFIG`` and its poll
loop is started on a daemon thread. Tests install their own with
``set_controller``.
"""

from __future__ import annotations

import threading
from typing import Optional

from appset.config.loader import load_config
from appset.controller import Controller

_controller: Optional[Controller] = None
_lock = threading.Lock()


def get_controller() -> Controller:
    global _controller
    with _lock:
        if _controller is None:
            controller = Controller(load_config())
            threading.Thread(
                target=controller.run_forever, name="appset-poll", daemon=True
            ).start()
            _controller = controller
        return _controller


def set_controller(controller: Optional[Controller]) -> None:
    """Install ``controller`` (or clear it with None)."""
    global _controller
    with _lock:
        _controller = controller
