"""Project identity strings shown by the CLI."""

__codename__ = "PRSCHEDULER"
__tagline__ = "Merge Later. Sleep Now."
__version__ = "0.3.0"

BANNER = r"""
  ___ ___   ___     _          _      _
 | _ \ _ \ / __| __| |_  ___ __| |_  _| |___ _ _
 |  _/   / \__ \/ _| ' \/ -_) _` | || | / -_) '_|
 |_| |_|_\ |___/\__|_||_\___\__,_|\_,_|_\___|_|
"""
