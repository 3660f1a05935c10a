"""FORGELINE identity constants."""

__codename__ = "FORGELINE"
__tagline__ = "Backlog in, branches out."
__version__ = "0.4.0"

BANNER = r"""
  ___  __   ___   __   ___  _    _  _  _  ___
 | __|/  \ | _ \ / _| | __|| |  | || \| || __|
 | _|| () ||   /| (_ || _| | |__| || .` || _|
 |_|  \__/ |_|_\ \__| |___||____|_||_|\_||___|
"""
