# bottle-launch: run Flatpak applications with their data in encrypted LUKS2 bottles.
from .core.version import VERSION

__version__ = VERSION

__all__ = ["VERSION", "__version__"]
