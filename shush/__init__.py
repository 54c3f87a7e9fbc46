"""
shush: presence relay with end-to-end encrypted private messages.

Pieces:
- Client side: KeyStore (current + retiring identity keys), hybrid cipher
  (secp256k1 ECDH + AES-128-GCM), hourly key rotation with a 5 minute
  grace window, local conversation log.
- Relay side: Directory (identity -> public key + display name, full roster
  broadcast on every change) and Router (forward-if-present, else drop).

KNOWN WEAKNESSES (kept for compatibility with existing browser peers):
- The AES key is a truncation of the raw ECDH secret, not a proper KDF.
- Display names are assigned by the relay and not bound to any key, so the
  relay can impersonate a name without breaking the key exchange.
"""
__all__ = [
    "client", "config", "crypto", "directory", "errors", "framing", "history",
    "keystore", "messages", "relay", "rotation", "router", "run_node",
]
