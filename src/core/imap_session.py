"""
IMAP Session Management

Connection config and health checks for the Gmail extractor.
"""

from utils import imap_common


def build_imap_conf(host, user, password, port=None, timeout_minutes=None):
    """
    Build a standard IMAP connection config dict.

    Args:
        host: IMAP host (``imap://host:port`` for plaintext test servers)
        user: IMAP username / email
        password: IMAP password or Gmail app password
        port: Optional port override
        timeout_minutes: Optional socket timeout for IMAP operations

    Returns:
        Dict with keys: host, port, user, password, timeout (seconds or None)
    """
    return {
        "host": host,
        "port": port,
        "user": user,
        "password": password,
        "timeout": timeout_minutes * 60 if timeout_minutes else None,
    }


def ensure_connection(conn, conf):
    """
    Ensure the connection is healthy, reconnecting if needed.

    Returns:
        Healthy IMAP connection, or None if connection failed.
        May return a different connection object if reconnection was needed.
    """
    return imap_common.ensure_connection_from_conf(conn, conf)


def ensure_folder_session(conn, conf, folder_name, readonly=True):
    """
    Ensure connection is healthy and folder is selected.

    If the connection was replaced, reselects the folder.

    Returns:
        Tuple of (connection, success: bool)
        - On success: (connection, True) - folder is selected
        - On failure: (connection or None, False)
    """
    old_conn = conn
    new_conn = ensure_connection(conn, conf)

    if not new_conn:
        return None, False

    if new_conn is not old_conn:
        try:
            typ, _data = new_conn.select(imap_common.quote_imap_string(folder_name), readonly=readonly)
        except Exception:
            return new_conn, False
        if typ != "OK":
            return new_conn, False

    return new_conn, True


class FolderSession:
    """A selected folder that transparently survives reconnects.

    ``connection()`` returns a healthy connection with the folder selected,
    reconnecting (and re-wrapping with ``wrap``) when the old one died.
    """

    def __init__(self, conn, conf, folder_name, readonly=True, wrap=None):
        self.conn = conn
        self.conf = conf
        self.folder_name = folder_name
        self.readonly = readonly
        self._wrap = wrap

    def connection(self):
        conn, ok = ensure_folder_session(self.conn, self.conf, self.folder_name, readonly=self.readonly)
        if not ok:
            raise ConnectionError(f"Unable to re-establish IMAP session for folder {self.folder_name}")
        if conn is not self.conn and self._wrap is not None:
            conn = self._wrap(conn)
        self.conn = conn
        return conn

    def logout(self):
        if self.conn is None:
            return
        try:
            self.conn.logout()
        except Exception:
            # Already disconnected.
            pass
        self.conn = None
