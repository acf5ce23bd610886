import threading
from contextlib import contextmanager


class KeyedLock:
    """
    키(VM id, 주문 id)별로 하나씩 생성되는 프로세스 내 상호 배제 락.
    같은 키에 대한 작업은 직렬화되고, 다른 키는 서로 막지 않습니다.
    더 이상 대기자가 없는 키의 락은 제거됩니다.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}  # key -> [lock, 참조 수]

    @contextmanager
    def hold(self, key):
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        lock = entry[0]

        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self):
        with self._guard:
            return len(self._locks)
