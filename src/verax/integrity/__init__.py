"""Run artifact integrity: SHA-256 manifests and the atomic commit transaction."""
