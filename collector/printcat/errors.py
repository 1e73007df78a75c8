"""取り込みパイプラインの例外定義."""


class IngestionError(Exception):
    """取り込み処理の基底例外."""


class NetworkError(IngestionError):
    """通信・タイムアウトの失敗."""


class HttpStatusError(NetworkError):
    """2xx 以外のステータスが返った."""

    def __init__(self, status_code: int, url: str):
        super().__init__(f"HTTP {status_code}: {url}")
        self.status_code = status_code
        self.url = url


class BlockedError(IngestionError):
    """CAPTCHA・ボット検知ページを受け取った."""


class PersistenceError(IngestionError):
    """DB への書き込みに失敗した."""


class AlreadyRunningError(IngestionError):
    """同じ処理が既に実行中."""
