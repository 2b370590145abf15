"""
DebugConsole - routes library diagnostics to the ``mdxlib`` logger
"""
import logging

logger = logging.getLogger("mdxlib")


class DebugConsole:
    @staticmethod
    def log(message):
        """Debug-level message"""
        logger.debug(message)

    @staticmethod
    def warn(message):
        """Something in the input was wrong but we carried on"""
        logger.warning(message)
