def load_env_file() -> None:
    """Load backend/.env into os.environ without overwriting exported values.

    WHAT:
        Developer convenience for running the API and worker locally.
    WHY:
        Production injects DATABASE_URL / JWT_SECRET / TOKEN_ENCRYPTION_KEY
        directly; a stray .env must never shadow them.
    """
    import logging
    from dotenv import load_dotenv

    logger = logging.getLogger(__name__)

    if load_dotenv(override=False):
        logger.info("[ENV] Loaded local .env file (exported variables kept)")
    else:
        logger.debug("[ENV] No local .env file found")
