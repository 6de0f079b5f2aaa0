import os


def _find_version_file():
    """Read a .version file next to this module, as written by release builds."""
    ver_file = os.path.join(os.path.dirname(os.path.realpath(__file__)), '.version')
    if os.path.exists(ver_file):
        with open(ver_file, 'r') as h:
            version = h.read().strip()
        if version:
            return version
    return None


__version__ = _find_version_file() or "0.3.0"
