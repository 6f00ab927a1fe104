"""
BUILDCREW Identity

Name, version and banner shared by the CLI and the package root.
"""

__codename__ = "BUILDCREW"
__tagline__ = "Many hands, one build."
__version__ = "0.4.0"

BANNER = r"""
  ___ _   _ ___ _    ___   ___ ___ _____      __
 | _ ) | | |_ _| |  |   \ / __| _ \ __\ \    / /
 | _ \ |_| || || |__| |) | (__|   / _| \ \/\/ /
 |___/\___/|___|____|___/ \___|_|_\___| \_/\_/
"""
