"""deskmarket - marketplace app-installation service for the web desktop"""

__version__ = "0.4.0"
