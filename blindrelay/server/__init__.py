"""
Reference blind relay: registration, SRP login, key directory, envelope
delivery and the sync channel.
"""
