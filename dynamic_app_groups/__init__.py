"""
Dynamic application groups
==========================
Keeps one Entra ID security group per application in step with the devices
Intune reports as having that application installed.
"""

__version__ = "1.0.0"
