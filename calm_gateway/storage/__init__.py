"""
Storage layer for usage records, conversations and journal entries.
"""
