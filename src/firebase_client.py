#!/usr/bin/env python3
"""
Firebase client wrapper for the relocation profile store.
Uses service account credentials taken from environment variables.
"""

import logging
import os
from typing import Dict, Any, Optional

import firebase_admin
from firebase_admin import credentials, firestore
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ["project_id", "private_key", "client_email"]


def service_account_from_env() -> Dict[str, Any]:
    """Build the service account dictionary from FIREBASE_* variables."""
    private_key = os.getenv("FIREBASE_PRIVATE_KEY")
    client_email = os.getenv("FIREBASE_CLIENT_EMAIL")
    return {
        "type": "service_account",
        "project_id": os.getenv("FIREBASE_PROJECT_ID"),
        "private_key_id": os.getenv("FIREBASE_PRIVATE_KEY_ID"),
        "private_key": private_key.replace('\\n', '\n') if private_key else None,
        "client_email": client_email,
        "client_id": os.getenv("FIREBASE_CLIENT_ID"),
        "auth_uri": os.getenv("FIREBASE_AUTH_URI"),
        "token_uri": os.getenv("FIREBASE_TOKEN_URI"),
        "auth_provider_x509_cert_url": "https://www.googleapis.com/oauth2/v1/certs",
        "client_x509_cert_url": (
            f"https://www.googleapis.com/robot/v1/metadata/x509/{client_email.replace('@', '%40')}"
            if client_email else None
        ),
        "universe_domain": "googleapis.com",
    }


class FirebaseClient:
    """Initializes the Firebase Admin SDK once per process and exposes Firestore."""

    def __init__(self, cred_dict: Optional[Dict[str, Any]] = None):
        if not firebase_admin._apps:
            cred_dict = cred_dict or service_account_from_env()

            missing_fields = [f for f in REQUIRED_FIELDS if not cred_dict.get(f)]
            if missing_fields:
                raise ValueError(f"Missing required Firebase environment variables: {missing_fields}")

            firebase_admin.initialize_app(credentials.Certificate(cred_dict))
            logger.info("✅ Firebase app initialized for project %s", cred_dict["project_id"])

        self.db = firestore.client()


def test_connection(collection: str = "relocation_profiles"):
    """Test Firestore connection and count stored profiles."""
    try:
        client = FirebaseClient()
        count = sum(1 for _ in client.db.collection(collection).limit(100).stream())
        print(f"✅ Firestore connected successfully. '{collection}' documents (first 100): {count}")
        return True
    except Exception as e:
        print(f"❌ Firebase connection failed: {e}")
        return False


if __name__ == "__main__":
    test_connection()
