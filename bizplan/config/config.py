import os
from pathlib import Path

from dotenv import load_dotenv

# Only load environment files if not already loaded by the app entrypoint
if not os.getenv("CONFIG_LOADED"):
    ENV = os.getenv("ENV", "production").lower()
    root_dir = Path(__file__).parent.parent.parent

    if ENV == "development":
        dev_env_file = root_dir / "development.env"
        env_file = root_dir / ".env"

        if dev_env_file.exists():
            load_dotenv(dev_env_file, override=True)
        elif env_file.exists():
            load_dotenv(env_file, override=True)
    else:
        env_file = root_dir / ".env"
        if env_file.exists():
            load_dotenv(env_file, override=True)
    os.environ["CONFIG_LOADED"] = "1"

ENV = os.getenv("ENV", "production").lower()

# MongoDB
if ENV == "development":
    MONGODB_URI = os.getenv("MONGODB_URI", "mongodb://localhost:27017/")
    MONGODB_NAME = os.getenv("MONGODB_NAME", "business_plan_dev_db")
else:
    MONGODB_URI = os.getenv("MONGODB_URI", "mongodb://mongodb:27017/")
    MONGODB_NAME = os.getenv("MONGODB_NAME", "business_plan_db")
MONGODB_URI_AUTH = os.getenv("MONGODB_URI_AUTH", MONGODB_URI)

# Entity store backend: "mongodb", or "memory" for local runs without a database
ENTITY_STORE = os.getenv("ENTITY_STORE", "mongodb").lower()

# ChatGPT configs (change drafting)
CHATGPT_API_KEY = os.getenv("CHATGPT_API_KEY")
CHATGPT_MODEL = os.getenv("CHATGPT_MODEL", "gpt-4o")

# Accepting a change whose target no longer exists: auto-reject it instead of
# leaving it pending for manual dismissal
AUTO_REJECT_ORPHANED_CHANGES = os.getenv(
    "AUTO_REJECT_ORPHANED_CHANGES", "false"
).lower() in ("1", "true", "yes")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Server
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))
