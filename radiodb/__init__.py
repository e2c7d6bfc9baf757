"""pymongo access to the durable broadcast state and audio recordings."""
