"""
DebugConsole - forwards converter diagnostics to the logging module
"""
import logging

logger = logging.getLogger("dae_lib")


class DebugConsole:
    @staticmethod
    def log(message):
        """Debug-level message"""
        logger.debug(message)

    @staticmethod
    def warning(message):
        """Problems that skip an element or an entity"""
        logger.warning(message)
