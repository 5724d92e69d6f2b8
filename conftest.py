"""
Root pytest configuration for Chat Fanout.

Sets up Python path and test environment variables for all test directories.
"""

import os
import sys
from pathlib import Path

# Set test environment variables before anything else imports settings
os.environ.setdefault("FANOUT_SERVICE_ENV", "development")
os.environ.setdefault("FANOUT_SERVICE_LOG_LEVEL", "DEBUG")
os.environ.setdefault("FCM_ENABLED", "false")
os.environ.setdefault("WEBPUSH_VAPID_PUBLIC_KEY", "")
os.environ.setdefault("WEBPUSH_VAPID_PRIVATE_KEY", "")
os.environ.setdefault("EMAIL_RESEND_API_KEY", "")
os.environ.setdefault("EMAIL_SMTP_HOST", "")
os.environ.setdefault("DELIVERY_APP_BASE_URL", "https://chat.example.com")

# Project root
project_root = Path(__file__).parent

# Add src directory to path for imports
src_path = project_root / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))
