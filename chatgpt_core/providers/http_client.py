"""进程级共享的 httpx.Client。

每次调用都新建 Client 会反复建立连接、占用端口，这里改为进程内共享
一个连接池，首次使用时懒加载。超时不在构造时固定，而是由
ChatCompletionsClient 在每次请求时传入。
"""

import threading
from typing import Optional

import httpx


_client: Optional[httpx.Client] = None
_lock = threading.Lock()


def get_http_client() -> httpx.Client:
    """返回共享的 httpx.Client，首次调用时创建。"""

    global _client
    if _client is None:
        with _lock:
            if _client is None:
                _client = httpx.Client(trust_env=False)
    return _client


def close_http_client() -> None:
    """关闭并丢弃共享 Client，下次 get_http_client 会重新创建。"""

    global _client
    with _lock:
        if _client is not None:
            _client.close()
            _client = None
