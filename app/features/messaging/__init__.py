"""
Messaging feature package.

Conversations, message delivery, moderation, attachments and retention
for direct messages between platform participants.
"""
