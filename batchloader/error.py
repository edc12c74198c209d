__all__ = ["BatchLoaderError", "FetchContractError", "LoadTimeout"]


class BatchLoaderError(Exception):
    pass


class FetchContractError(BatchLoaderError):
    """Fetch function returned results which can't be matched with the
    requested keys
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class LoadTimeout(BatchLoaderError, TimeoutError):
    def __init__(self, key: object) -> None:
        super().__init__("Timed out waiting for key {!r}".format(key))
        self.key = key
