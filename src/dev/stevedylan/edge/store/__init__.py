"""
Session Storage

Redis-backed storage for in-flight authorization state, completed sessions and the
guest session indirection, plus the ``session_id`` cookie contract.
"""
