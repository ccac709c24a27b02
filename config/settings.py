# config/settings.py
"""
Central configuration loader for the Reforger server manager.

Loads process-wide settings from environment variables (or .env) with
sensible defaults. Per-server settings live in the JSON file named by
SERVERS_CONFIG and are loaded by config/servers.py.
"""

from decouple import config
import logging

# ===========================================
# SERVER DEFINITIONS
# ===========================================
SERVERS_CONFIG = config('SERVERS_CONFIG', default='config.json')

# ===========================================
# RCON DEFAULTS
# ===========================================
# Seconds between "#players" polls on every connected server
PLAYERS_POLL_INTERVAL = config('PLAYERS_POLL_INTERVAL', default=30, cast=float)

# ===========================================
# LOGGING CONFIGURATION
# ===========================================
LOG_LEVEL = config('LOG_LEVEL', default='INFO')


def configure_logging(level: str = LOG_LEVEL) -> None:
    """Install the root handler used by every module logger."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    # paramiko logs every SFTP channel open at INFO
    logging.getLogger('paramiko').setLevel(logging.WARNING)
