from profcore.configured_logger import logger
from profcore.errors import StringIndexError

_NO_FALLBACK = object()


class StringTable(object):
    """Append-only interner over a list of strings.

    The table owns the backing list: strings must only be added through
    `index_for_string`, otherwise the reverse index goes stale. A caller that
    needs the same interner in several places passes the StringTable instance
    around instead of re-deriving it from the list.
    """

    def __init__(self, strings=None):
        if strings is None:
            strings = []
        self._array = strings
        self._existing = {}
        for index, string in enumerate(strings):
            # Keep the first index if the input array has duplicates.
            self._existing.setdefault(string, index)

    @staticmethod
    def with_backing_array(strings):
        return StringTable(strings)

    @property
    def array(self):
        return self._array

    def __len__(self):
        return len(self._array)

    def index_for_string(self, string: str) -> int:
        if string in self._existing:
            return self._existing[string]
        index = len(self._array)
        self._array.append(string)
        self._existing[string] = index
        return index

    def get_string(self, index: int, fallback=_NO_FALLBACK) -> str:
        if self.has_index(index):
            return self._array[index]
        if fallback is not _NO_FALLBACK:
            logger.warning(
                'String table has no entry at index %s, using "%s" instead',
                index, fallback)
            return fallback
        raise StringIndexError(index)

    def has_index(self, index: int) -> bool:
        return isinstance(index, int) and 0 <= index < len(self._array)

    def has_string(self, string: str) -> bool:
        return string in self._existing
