import logging
import os

logger = logging.getLogger("cart_utils")
FORMAT = "[%(filename)s:%(lineno)s - %(funcName)20s() ] %(message)s"
# CART_LOG_FILE unset logs to stderr
logging.basicConfig(filename=os.environ.get("CART_LOG_FILE"), format=FORMAT)
logger.setLevel(logging.DEBUG)
