"""PATCHWRIGHT identity constants."""

__version__ = "0.4.0"
__codename__ = "PATCHWRIGHT"
__tagline__ = "Prompt In. Pull Request Out."

BANNER = r"""
  ___  _ _____ ___ _  ___      _____ ___ ___ _  _ _____
 | _ \/_\_   _/ __| || \ \    / / _ \_ _/ __| || |_   _|
 |  _/ _ \| || (__| __ |\ \/\/ /|   /| | (_ | __ | | |
 |_|/_/ \_\_| \___|_||_| \_/\_/ |_|_\___\___|_||_| |_|
"""
