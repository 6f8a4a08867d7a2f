"""
fleetrun - run commands and copy files across a fleet of hosts over SSH.
"""

from loguru import logger

# Library logging stays silent until configure_logging() is called.
logger.disable("fleetrun")

__version__ = "0.1.0"
