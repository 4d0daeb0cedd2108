import logging
import uvicorn
from .config import get_config
from .admin_api import app as admin_app
from .logging_utils import setup_logging

logger = logging.getLogger("reposcope_admin_main")

def main() -> None:
    cfg = get_config().validate()
    setup_logging(cfg)

    if not cfg.admin_enabled:
        logger.warning("Admin API is disabled in config (admin.enabled=false)")
        return

    host = cfg.admin_host
    port = cfg.admin_port

    logger.info("Starting RepoScope Admin API on %s:%s", host, port)
    logger.info("This API is intended for localhost-only access.")

    uvicorn.run(
        admin_app,
        host=host,
        port=port,
        log_level=cfg.log_level.lower(),
    )


if __name__ == "__main__":
    main()
