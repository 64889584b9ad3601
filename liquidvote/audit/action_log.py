# liquidvote/audit/action_log.py

import os
import json
import hashlib
import base64
import logging
import threading
from datetime import datetime
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives import serialization

from liquidvote.delegation.actions import action_to_dict

logger = logging.getLogger(__name__)

# Append-only log of every vote/delegation action, hash chained and signed
# with Ed25519 so later edits or deletions are detectable.


class ActionLogger:
    def __init__(self, log_dir='logs', signing_key_pem=None):
        self.log_dir = log_dir
        self.log_file = os.path.join(log_dir, 'actions.log')
        self.previous_hash = None
        # request threads share one chain head
        self._lock = threading.Lock()

        os.makedirs(log_dir, exist_ok=True)

        if signing_key_pem:
            self.signing_key = serialization.load_pem_private_key(signing_key_pem.encode(), password=None)
        else:
            self.signing_key = Ed25519PrivateKey.generate()
        self._load_previous_hash()

    def _load_previous_hash(self):
        if os.path.exists(self.log_file):
            with open(self.log_file, 'r') as f:
                lines = [line for line in f if line.strip()]
                if lines:
                    try:
                        last_entry = json.loads(lines[-1])
                        self.previous_hash = last_entry.get('hash')
                    except json.JSONDecodeError:
                        logger.warning("Last action log entry is unreadable, starting a new chain")
                        self.previous_hash = None

    def public_key_pem(self):
        return self.signing_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode()

    def log_action(self, proposal_id, action):
        """Append ``action`` for ``proposal_id``. Returns the entry hash, or None on failure."""
        try:
            with self._lock:
                log_entry = {
                    "timestamp": datetime.utcnow().isoformat(),
                    "proposal_id": proposal_id,
                    "action": action_to_dict(action),
                    "previous_hash": self.previous_hash,
                }
                entry_json = json.dumps(log_entry, sort_keys=True)
                entry_hash = hashlib.sha256(entry_json.encode()).hexdigest()
                log_entry['hash'] = entry_hash

                signature = self.signing_key.sign(entry_json.encode())
                log_entry['signature'] = base64.b64encode(signature).decode()

                with open(self.log_file, 'a') as f:
                    f.write(json.dumps(log_entry) + "\n")

                self.previous_hash = entry_hash
                return entry_hash
        except (OSError, TypeError, ValueError) as e:
            logger.error("Action log error for proposal %s: %s", proposal_id, e)
            return None

    def entries(self, proposal_id=None):
        if not os.path.exists(self.log_file):
            return []
        found = []
        with open(self.log_file, 'r') as f:
            for line in f:
                if not line.strip():
                    continue
                entry = json.loads(line)
                if proposal_id is None or entry.get('proposal_id') == proposal_id:
                    found.append(entry)
        return found

    def verify_log_integrity(self, public_key_pem=None):
        try:
            if not os.path.exists(self.log_file):
                return True
            if public_key_pem:
                public_key = serialization.load_pem_public_key(public_key_pem.encode())
            else:
                public_key = self.signing_key.public_key()
            previous_hash = None
            with open(self.log_file, 'r') as f:
                for line in f:
                    if not line.strip():
                        continue
                    log_entry = json.loads(line)
                    if log_entry.get('previous_hash') != previous_hash:
                        return False
                    entry_copy = dict(log_entry)
                    signature = base64.b64decode(entry_copy.pop('signature'))
                    recorded_hash = entry_copy.pop('hash')
                    entry_json = json.dumps(entry_copy, sort_keys=True).encode()
                    if hashlib.sha256(entry_json).hexdigest() != recorded_hash:
                        return False
                    public_key.verify(signature, entry_json)
                    previous_hash = recorded_hash
            return True
        except Exception:
            return False
