"""Leaveflow — leave-request lifecycle and approval-workflow engine."""
