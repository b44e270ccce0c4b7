"""Notification intents emitted by the leave engine."""
