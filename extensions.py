"""Flask extensions shared by the web process and the billing CLI."""

from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

# Only the webhook endpoint is exposed; no default limits on anything else.
limiter = Limiter(get_remote_address, storage_uri="memory://", default_limits=[])
