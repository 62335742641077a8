"""Session recorder: sidecar event logs, WAV capture and archival handoff."""
