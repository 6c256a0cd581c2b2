"""
Foreground application lookup.

Uses xdotool/xprop to read the focused window's title and WM_CLASS. The
WM_CLASS class name serves as the application name and the instance name
as its identifier (the closest X11 analogue of a bundle identifier).
"""

import logging
import subprocess
from typing import Optional

from .models import ForegroundApp

logger = logging.getLogger(__name__)


def parse_wm_class(xprop_output: str) -> tuple[Optional[str], Optional[str]]:
    """Parse ``WM_CLASS(STRING) = "instance", "Class"`` into (instance, class)."""
    if 'WM_CLASS' not in xprop_output or '=' not in xprop_output:
        return None, None
    parts = xprop_output.split('=', 1)[1].strip()
    classes = [c.strip().strip('"') for c in parts.split(',') if c.strip()]
    if len(classes) >= 2:
        return classes[0] or None, classes[1] or None
    if classes:
        return classes[0] or None, classes[0] or None
    return None, None


class XdotoolForeground:
    """
    Reads the focused window on X11.

    Usage:
        app = XdotoolForeground().current_foreground()
        print(app.name, app.bundle_id, app.window_title)
    """

    def __init__(self, timeout: float = 1.0):
        self.timeout = timeout

    def current_foreground(self) -> ForegroundApp:
        """Return the focused application; unknown fields are None."""
        try:
            window_id = self._run(['xdotool', 'getactivewindow'])
            if not window_id:
                return ForegroundApp()

            try:
                window_title = self._run(['xdotool', 'getwindowname', window_id])
            except subprocess.CalledProcessError:
                window_title = None

            try:
                instance, app_class = parse_wm_class(self._run(['xprop', '-id', window_id, 'WM_CLASS']))
            except subprocess.CalledProcessError:
                instance, app_class = None, None

            return ForegroundApp(name=app_class, bundle_id=instance, window_title=window_title)

        except (subprocess.TimeoutExpired, subprocess.CalledProcessError, FileNotFoundError) as e:
            logger.debug(f"Failed to get active window: {e}")
            return ForegroundApp()

    def _run(self, args: list[str]) -> str:
        return subprocess.check_output(
            args,
            stderr=subprocess.DEVNULL,
            timeout=self.timeout
        ).decode(errors='replace').strip()
