from __future__ import annotations

import abc
import typing as tp

from carryon._core._headers import Headers

if tp.TYPE_CHECKING:
    from carryon._core.models import RequestOptions

AbortFn = tp.Callable[[tp.Any], None]
ResumeFn = tp.Callable[[], None]


class Handler(abc.ABC):
    """
    The response delivery contract.

    A dispatch reports one exchange through these callbacks, in order:
    `on_connect` once, then either `on_upgrade` or `on_headers` followed by
    zero or more `on_data`, and finally exactly one of `on_complete` or
    `on_error`. An exception raised by a callback aborts the exchange and is
    reported back through `on_error`. Returning False from `on_headers` or
    `on_data` pauses delivery until the `resume` callback is invoked.
    """

    @abc.abstractmethod
    def on_connect(self, abort: AbortFn) -> None:
        pass

    def on_upgrade(self, status_code: int, headers: Headers, stream: tp.Any) -> None:
        raise NotImplementedError("Upgrade is not supported by this handler")

    @abc.abstractmethod
    def on_headers(self, status_code: int, headers: Headers, resume: ResumeFn, status_message: str) -> bool:
        pass

    @abc.abstractmethod
    def on_data(self, chunk: bytes) -> bool:
        pass

    @abc.abstractmethod
    def on_complete(self, trailers: tp.Optional[Headers]) -> None:
        pass

    @abc.abstractmethod
    def on_error(self, error: BaseException) -> None:
        pass


class DecoratorHandler(Handler):
    """
    Pass-through handler that forwards every callback to `handler`.

    Callbacks arriving after the exchange has completed, errored or been
    aborted are dropped, so subclasses only override what they change.
    """

    def __init__(self, handler: Handler) -> None:
        if not isinstance(handler, Handler):
            raise TypeError("handler must be a Handler")
        self.handler = handler
        self._aborted = False
        self._errored = False
        self._completed = False
        self._abort: tp.Optional[AbortFn] = None

    def on_connect(self, abort: AbortFn) -> None:
        self._aborted = False
        self._errored = False
        self._completed = False
        self._abort = abort

        def _abort(reason: tp.Any) -> None:
            if not self._aborted and not self._completed and not self._errored:
                self._aborted = True
                abort(reason)

        self.handler.on_connect(_abort)

    def on_upgrade(self, status_code: int, headers: Headers, stream: tp.Any) -> None:
        if not self._aborted and not self._errored:
            self.handler.on_upgrade(status_code, headers, stream)

    def on_headers(self, status_code: int, headers: Headers, resume: ResumeFn, status_message: str) -> bool:
        if self._aborted or self._errored:
            return True
        return self.handler.on_headers(status_code, headers, resume, status_message)

    def on_data(self, chunk: bytes) -> bool:
        if self._aborted or self._errored:
            return True
        return self.handler.on_data(chunk)

    def on_complete(self, trailers: tp.Optional[Headers]) -> None:
        if not self._aborted and not self._completed and not self._errored:
            self._completed = True
            self.handler.on_complete(trailers)

    def on_error(self, error: BaseException) -> None:
        if not self._errored and not self._completed:
            self._errored = True
            self.handler.on_error(error)


class Dispatch(tp.Protocol):
    async def __call__(self, opts: "RequestOptions", handler: Handler) -> None: ...


Interceptor = tp.Callable[[Dispatch], Dispatch]


def compose(dispatch: Dispatch, *interceptors: Interceptor) -> Dispatch:
    """
    Wrap `dispatch` with `interceptors`, the last one being outermost.

    Example:
    ```python
        dispatch = compose(HttpxDispatcher(transport), resume_interceptor, cache_interceptor)
    ```
    """
    for interceptor in interceptors:
        dispatch = interceptor(dispatch)
    return dispatch
