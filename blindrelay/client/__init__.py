"""
Client side of the blind relay: session keys, local store, relay API and the
terminal chat client.
"""
