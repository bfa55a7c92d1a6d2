import os

class Config:
    SERVER_URL = os.environ.get('QUIZ_SERVER_URL') or 'http://localhost:5000'
    SOCKETIO_PATH = os.environ.get('QUIZ_SOCKETIO_PATH') or 'socket.io'
    # Connection attempts (seconds)
    CONNECT_TIMEOUT_SEC = int(os.environ.get('CONNECT_TIMEOUT_SEC', '10'))
    MAX_CONNECT_ATTEMPTS = int(os.environ.get('MAX_CONNECT_ATTEMPTS', '5'))
    RECONNECT_DELAY_SEC = float(os.environ.get('RECONNECT_DELAY_SEC', '1.0'))
    # 'fixed' or 'exponential'
    RECONNECT_BACKOFF = os.environ.get('RECONNECT_BACKOFF', 'fixed')
    RECONNECT_DELAY_MAX_SEC = float(os.environ.get('RECONNECT_DELAY_MAX_SEC', '10.0'))
    # Re-issue join-game after an automatic reconnect if we had joined
    REJOIN_ON_RECONNECT = os.environ.get('REJOIN_ON_RECONNECT', 'true').lower() == 'true'
    # Submit button re-enable guard (ms)
    SUBMIT_GRACE_MS = int(os.environ.get('SUBMIT_GRACE_MS', '1000'))
    # Fallback request path
    HTTP_TIMEOUT_SEC = float(os.environ.get('HTTP_TIMEOUT_SEC', '10'))
    IDENTITY_CACHE_PATH = os.environ.get('IDENTITY_CACHE_PATH') or os.path.join(
        os.path.expanduser('~'), '.quiz_client', 'storage.json'
    )
    IDENTITY_CACHE_KEY = 'mathQuizUser'
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
