"""Version information for energylogger."""

# For development add `+dev` to previous release
# For release omit `+dev`.
__version__ = "0.1.0"
