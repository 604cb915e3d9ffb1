"""Configuration management for the application."""
import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Lark open platform
LARK_BASE_URL = os.getenv("LARK_BASE_URL", "https://open.feishu.cn").rstrip("/")
LARK_HTTP_TIMEOUT = float(os.getenv("LARK_HTTP_TIMEOUT", "30"))

# Persisted credentials and table configuration
LARK_CONFIG_PATH = os.getenv("LARK_CONFIG_PATH", "./config.json")

# SiliconFlow (OpenAI-compatible) AI parsing
SILICONFLOW_BASE_URL = os.getenv("SILICONFLOW_BASE_URL", "https://api.siliconflow.cn/v1")
SILICONFLOW_DEFAULT_MODEL = os.getenv("SILICONFLOW_DEFAULT_MODEL", "Qwen/Qwen2.5-7B-Instruct")
AI_CACHE_TTL_SECONDS = int(os.getenv("AI_CACHE_TTL_SECONDS", "3600"))

# Field-completion watcher
WATCH_INITIAL_DELAY = float(os.getenv("WATCH_INITIAL_DELAY", "10"))
WATCH_BASE_INTERVAL = float(os.getenv("WATCH_BASE_INTERVAL", "10"))
WATCH_MAX_INTERVAL = float(os.getenv("WATCH_MAX_INTERVAL", "300"))
WATCH_CAP_EXPONENT = int(os.getenv("WATCH_CAP_EXPONENT", "6"))
WATCH_MAX_ATTEMPTS = int(os.getenv("WATCH_MAX_ATTEMPTS", "20"))

# Logging
LOG_DIR = os.getenv("LOG_DIR")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_RETENTION_DAYS = int(os.getenv("LOG_RETENTION_DAYS", "7"))

# HTTP server
SERVER_HOST = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT = int(os.getenv("SERVER_PORT", "8080"))

if WATCH_MAX_ATTEMPTS < 1:
    raise ValueError("WATCH_MAX_ATTEMPTS must be at least 1. Please fix it in .env file.")
