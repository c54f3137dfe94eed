"""Friendship Day greeting card rendering service."""
