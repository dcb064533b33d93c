from __future__ import annotations


class FeedCuratorError(RuntimeError):
    pass


class JobNotFound(FeedCuratorError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"job_not_found: {job_id}")
        self.job_id = job_id


class InvalidUrl(ValueError):
    pass


class FetchFailed(FeedCuratorError):
    def __init__(self, url: str, reason: str, status: int | None = None) -> None:
        super().__init__(f"fetch_failed {url}: {reason}")
        self.url = url
        self.reason = reason
        self.status = status


class CompletionFailed(FeedCuratorError):
    pass


class DispatchError(FeedCuratorError):
    pass
