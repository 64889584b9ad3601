# liquidvote/operations/backup_manager.py
# Write-once, timestamped snapshots of a proposal's vote/delegation state
# with a SHA-256 integrity file, AES-256-GCM encrypted when a key is set.

import os, json, hashlib, secrets, pathlib, logging
from datetime import datetime
from typing import Dict, List, Optional
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from liquidvote.delegation.actions import ProposalSnapshot

logger = logging.getLogger(__name__)

TRIGGER_HOURLY = "hourly"
TRIGGER_PRE_CALCULATION = "pre_calculation"
TRIGGER_MANUAL = "manual"
TRIGGERS = (TRIGGER_HOURLY, TRIGGER_PRE_CALCULATION, TRIGGER_MANUAL)

NONCE_BYTES = 12


def _sha256_file(path: str) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def _write_once(path: str, data: bytes) -> None:
    # "x" refuses to open an existing file, so a snapshot is never overwritten
    with open(path, "xb") as f:
        f.write(data)
    os.chmod(path, 0o440)


class SnapshotCoordinator:
    def __init__(self, store, outdir: str = "./backups", aes256_key_hex: Optional[str] = None):
        if aes256_key_hex and len(aes256_key_hex) != 64:
            raise ValueError("BACKUP_AES256_KEY must be 64 hex chars (32 bytes)")
        self.store = store
        self.outdir = outdir
        self.key = bytes.fromhex(aes256_key_hex) if aes256_key_hex else None
        pathlib.Path(outdir).mkdir(parents=True, exist_ok=True)

    def capture(self, proposal_id, trigger: str) -> Optional[Dict]:
        """Best effort: failures are logged and reported as None, never raised."""
        try:
            snapshot = self.store.load_snapshot(proposal_id)
            return self.write(snapshot, trigger)
        except Exception:
            logger.exception("Snapshot (%s) of proposal %s failed", trigger, proposal_id)
            return None

    def capture_open_proposals(self, trigger: str = TRIGGER_HOURLY) -> List[Dict]:
        try:
            proposal_ids = self.store.open_proposals()
        except Exception:
            logger.exception("Could not list proposals for %s snapshot", trigger)
            return []
        written = [self.capture(proposal_id, trigger) for proposal_id in proposal_ids]
        return [meta for meta in written if meta is not None]

    def write(self, snapshot: ProposalSnapshot, trigger: str) -> Dict:
        if trigger not in TRIGGERS:
            raise ValueError(f"Unknown snapshot trigger: {trigger}")
        created_at = datetime.utcnow()
        ts = created_at.strftime("%Y%m%d-%H%M%S-%f")
        payload = json.dumps(snapshot.to_dict(), sort_keys=True).encode()

        name = f"proposal-{snapshot.proposal_id}-{trigger}-{ts}-{secrets.token_hex(4)}.json"
        if self.key:
            nonce = secrets.token_bytes(NONCE_BYTES)
            payload = nonce + AESGCM(self.key).encrypt(nonce, payload, None)
            name += ".aes"
        path = os.path.join(self.outdir, name)
        _write_once(path, payload)

        sha = _sha256_file(path)
        sha_path = path + ".sha256"
        _write_once(sha_path, f"{sha}  {name}\n".encode())

        meta = {
            "proposal_id": snapshot.proposal_id,
            "trigger": trigger,
            "snapshot_file": path,
            "sha256_file": sha_path,
            "sha256": sha,
            "encrypted": self.key is not None,
            "actions": len(snapshot.actions),
            "participants": len(snapshot.participants),
            "snapshot_taken_at": snapshot.taken_at.isoformat(),
            "created_at": created_at.isoformat(),
        }
        _write_once(path + ".manifest.json", json.dumps(meta, indent=2).encode())
        logger.info("Snapshot (%s) of proposal %s written to %s", trigger, snapshot.proposal_id, path)
        return meta

    def list_snapshots(self, proposal_id=None) -> List[Dict]:
        manifests = []
        for manifest in sorted(pathlib.Path(self.outdir).glob("proposal-*.manifest.json")):
            with open(manifest, "r", encoding="utf-8") as f:
                meta = json.load(f)
            if proposal_id is None or meta.get("proposal_id") == proposal_id:
                manifests.append(meta)
        return sorted(manifests, key=lambda m: m["created_at"])

    def load(self, path: str) -> ProposalSnapshot:
        """Read a snapshot back for disaster recovery after checking its integrity file."""
        with open(path + ".sha256", "r", encoding="utf-8") as f:
            expected = f.read().split()[0]
        if _sha256_file(path) != expected:
            raise ValueError(f"Integrity check failed for {path}")
        with open(path, "rb") as f:
            payload = f.read()
        if path.endswith(".aes"):
            if not self.key:
                raise ValueError("BACKUP_AES256_KEY is required to read encrypted snapshots")
            payload = AESGCM(self.key).decrypt(payload[:NONCE_BYTES], payload[NONCE_BYTES:], None)
        return ProposalSnapshot.from_dict(json.loads(payload))
