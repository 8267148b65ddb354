"""State layer - ventana deslizante de lecturas."""

from .window import RollingWindow, WindowSnapshot

__all__ = ["RollingWindow", "WindowSnapshot"]
