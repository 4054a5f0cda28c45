import logging
import sys

PACKET_SIZE = 8192
logger = logging.getLogger(__package__)
logger.addHandler(logging.StreamHandler(sys.stdout))
default_ports = {"ssh": 22}
default_port = 0
default_password = "12345678"
ca_port = 22
# seconds an accepted ssh connection may take to open its channel
CHANNEL_TIMEOUT = 30
