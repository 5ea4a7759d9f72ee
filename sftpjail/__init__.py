"""Confined SFTP session core with per-user capabilities and quotas."""
