"""ODX server discovery for Odamex"""

__version__ = '0.1.0'
