"""Request/response fallback channel used when the event stream is down."""
