import logging
import os

from src.config.constants import DEFAULT_CLIENT_IP

# Create logs directory if it doesn't exist
log_dir = "./logs"
os.makedirs(log_dir, exist_ok=True)

LOG_LEVEL = logging.INFO

# Configure logging
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.StreamHandler(),  # Output to console
        # logging.FileHandler(os.path.join(log_dir, "app.log"))  # Output to file
    ],
)

LOOPBACK_ADDRESSES = {"127.0.0.1", "::1", "localhost"}


def get_logger(name: str):
    return logging.getLogger(name)


def get_client_ip(request) -> str:
    """
    Public IPv4 of the customer for gateways that require it.

    Proxy headers are checked before the socket address; loopback addresses
    are skipped so local development falls back to DEFAULT_CLIENT_IP.
    """
    candidates = []
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        candidates.append(forwarded_for.split(",")[0])
    candidates.append(request.headers.get("x-real-ip"))
    candidates.append(request.headers.get("cf-connecting-ip"))
    if request.client:
        candidates.append(request.client.host)

    for candidate in candidates:
        if not candidate:
            continue
        ip = candidate.strip()
        if ip.startswith("::ffff:"):
            ip = ip[len("::ffff:"):]
        if ip and ip not in LOOPBACK_ADDRESSES:
            return ip
    return DEFAULT_CLIENT_IP
