"""
Runtime configuration, read from the environment (and backend/.env).
"""

from dotenv import load_dotenv
from pathlib import Path
import os

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# MongoDB (transactions need a replica set)
MONGO_URL = os.environ.get('MONGO_URL', 'mongodb://localhost:27017/?replicaSet=rs0')
DB_NAME = os.environ.get('DB_NAME', 'funding_management')

# mongo | memory
STORE_BACKEND = os.environ.get('STORE_BACKEND', 'mongo').lower()

WITHDRAWAL_REASON_MIN_LENGTH = int(os.environ.get('WITHDRAWAL_REASON_MIN_LENGTH', '5'))

LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()

CORS_ORIGINS = [o.strip() for o in os.environ.get('CORS_ORIGINS', '*').split(',') if o.strip()]
