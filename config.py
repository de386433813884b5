"""Configuration module for the reading backend."""
import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Gemini API Configuration
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")
GEMINI_BASE_URL = os.getenv("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta")
GEMINI_UPLOAD_URL = os.getenv("GEMINI_UPLOAD_URL", "https://generativelanguage.googleapis.com/upload/v1beta/files")
IMAGE_TO_TEXT_MODEL = os.getenv("IMAGE_TO_TEXT_MODEL", "gemini-2.5-flash")
TEXT_TO_AUDIO_MODEL = os.getenv("TEXT_TO_AUDIO_MODEL", "gemini-2.5-flash-preview-tts")
DOCUMENT_CHAT_MODEL = os.getenv("GEMINI_DOCUMENT_CHAT_MODEL", "gemini-2.5-flash")
HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "120"))

# Storage Configuration
DB_PATH = Path(os.getenv("DB_PATH", "./output/reader.db"))
BLOB_ROOT = Path(os.getenv("BLOB_ROOT", "./output/blobs"))
BLOB_PUBLIC_BASE_URL = os.getenv("BLOB_PUBLIC_BASE_URL", "http://localhost:3001/media")
MEDIA_BUCKET = os.getenv("MEDIA_BUCKET", "readai-media")
PLACEHOLDER_IMAGE_URL = "placeholder"

# Ensure output directories exist
DB_PATH.parent.mkdir(parents=True, exist_ok=True)

# Generation limits
MAX_TEXT_LENGTH = int(os.getenv("MAX_TEXT_LENGTH", "1000"))  # TTS input cap in characters
DEFAULT_EXTRACTION_CONFIDENCE = 0.95

# Rate Limiting
MAX_RETRIES = int(os.getenv("MAX_RETRIES", "3"))
RETRY_DELAY_SECONDS = float(os.getenv("RETRY_DELAY_SECONDS", "1.0"))
RETRY_MAX_DELAY_SECONDS = 30.0

# Document chat
MAX_CONVERSATION_HISTORY = int(os.getenv("MAX_CONVERSATION_HISTORY", "10"))
MAX_HISTORY_MESSAGES = 50
MAX_MESSAGE_LENGTH = 10000
FILE_UPLOAD_TIMEOUT_SECONDS = float(os.getenv("FILE_UPLOAD_TIMEOUT_SECONDS", "60"))
FILE_POLL_INTERVAL_SECONDS = float(os.getenv("FILE_POLL_INTERVAL_SECONDS", "2"))
FILE_RETENTION_HOURS = 48  # Fixed by the Files API, cannot be extended

# Token pricing (USD per token)
CACHED_TOKEN_RATE = 0.00001
PROMPT_TOKEN_RATE = 0.00015
OUTPUT_TOKEN_RATE = 0.00060

# Audio defaults
DEFAULT_VOICE = os.getenv("DEFAULT_VOICE", "Zephyr")
AUDIO_DEFAULT_CHANNELS = 1
AUDIO_DEFAULT_SAMPLE_RATE = 22050
AUDIO_DEFAULT_BITS_PER_SAMPLE = 16

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
