"""ACTIONGATE identity constants."""

__version__ = "0.1.0"
__codename__ = "ACTIONGATE"
__tagline__ = "Ask First. Act Once."

BANNER = r"""
   _   ___ _____ ___ ___  _  _  ___   _ _____ ___
  /_\ / __|_   _|_ _/ _ \| \| |/ __| /_\_   _| __|
 / _ \ (__  | |  | | (_) | .` | (_ |/ _ \| | | _|
/_/ \_\___| |_| |___\___/|_|\_|\___/_/ \_\_| |___|
"""
