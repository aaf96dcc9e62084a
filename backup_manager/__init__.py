"""
Docker Backup Manager: capture, archive and restore Portainer-managed stacks.
"""

__version__ = '2025.10.17'
