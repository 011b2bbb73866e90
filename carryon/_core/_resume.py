from __future__ import annotations

import logging
import typing as tp

from carryon._core._cancel import CancelToken
from carryon._core._handler import AbortFn, Dispatch, Handler, ResumeFn
from carryon._core._headers import ByteRange, ContentRange, Headers, is_weak_etag
from carryon._core._retry import RetryDecision, backoff, resolve, retries_enabled
from carryon._core.models import RequestOptions, RetrySession, is_disturbed
from carryon._exceptions import CancellationError, ResumeValidationError, StatusError

logger = logging.getLogger("carryon.core.resume")


class ResumeController(Handler):
    """
    Keeps one logical request alive across transport and status failures.

    Failures before the response headers reach the application re-issue the
    request unchanged. Failures while the body is streaming re-issue it as a
    conditional range request (`If-Match` + `Range`) starting at the first
    byte the application has not seen, and splice the new body onto the old
    one. A resumed response that cannot prove it continues the same
    representation is dropped and the failure that triggered the resume is
    reported instead.

    Attempts are strictly sequential: the next one is dispatched only after
    the previous one reported its outcome and the backoff elapsed.
    """

    def __init__(self, opts: RequestOptions, handler: Handler) -> None:
        self.handler = handler
        self.session = RetrySession(opts=opts)
        self._cancel = CancelToken()
        self._attempt_abort: tp.Optional[AbortFn] = None
        self._attempt_resume: tp.Optional[ResumeFn] = None
        self._decision: tp.Optional[RetryDecision] = None
        self._status_error: tp.Optional[StatusError] = None
        self._connected = False
        self._finished = False

    async def run(self, dispatch: Dispatch) -> None:
        signal = self.session.opts.signal
        if signal is not None:
            signal.add_callback(self._abort)
        try:
            opts = self.session.opts
            while True:
                self._decision = None
                self._status_error = None
                self._attempt_abort = None
                await dispatch(opts, self)
                self._attempt_abort = None

                decision = self._decision
                if decision is None or self._finished:
                    return

                logger.debug(f"Waiting {decision.delay}s before retry {self.session.attempt}")
                try:
                    await backoff(decision, self._cancel)
                except CancellationError as exc:
                    logger.debug("Request aborted while waiting to retry")
                    self._fail(exc)
                    return

                opts = self._next_attempt_options()
        finally:
            if signal is not None:
                signal.remove_callback(self._abort)

    def _next_attempt_options(self) -> RequestOptions:
        session = self.session
        if not session.headers_sent:
            logger.debug("Retrying request")
            return session.opts

        assert session.pos is not None and session.etag is not None
        byte_range = ByteRange(start=session.pos, end=session.end)
        logger.debug(f"Resuming response body with range {byte_range.to_header()}")
        return session.opts.with_headers(
            {
                "if-match": session.etag,
                "range": byte_range.to_header(),
            }
        )

    def _abort(self, reason: tp.Any = None) -> None:
        session = self.session
        if session.aborted:
            return
        session.aborted = True
        session.abort_reason = reason if reason is not None else CancellationError()
        self._cancel.cancel(session.abort_reason)
        if self._attempt_abort is not None:
            self._attempt_abort(session.abort_reason)

    def _resume(self) -> None:
        if self._attempt_resume is not None:
            self._attempt_resume()

    def _connect_downstream(self) -> None:
        if not self._connected:
            self._connected = True
            self.handler.on_connect(self._abort)

    def _fail(self, error: BaseException) -> None:
        if self._finished:
            return
        self._finished = True
        self._connect_downstream()
        self.handler.on_error(error)

    def _decide(self, error: BaseException) -> tp.Optional[RetryDecision]:
        session = self.session
        if session.aborted or is_disturbed(session.opts.body):
            return None
        decision = resolve(error, session.attempt, session.opts)
        session.attempt += 1
        return decision

    # Handler callbacks, one set per attempt.

    def on_connect(self, abort: AbortFn) -> None:
        self._connect_downstream()
        if self.session.aborted:
            abort(self.session.abort_reason)
        else:
            self._attempt_abort = abort

    def on_upgrade(self, status_code: int, headers: Headers, stream: tp.Any) -> None:
        self.handler.on_upgrade(status_code, headers, stream)

    def on_headers(self, status_code: int, headers: Headers, resume: ResumeFn, status_message: str) -> bool:
        session = self.session

        if session.headers_sent:
            self._validate_resumed(status_code, headers)
            logger.debug(f"Resumed response body at byte {session.pos}")
            session.error = None
            self._attempt_resume = resume
            return True

        if status_code >= 400:
            error = StatusError(status_code, headers.to_dict(), message=status_message or None)
            decision = self._decide(error)
            if decision is not None:
                self._status_error = error
                self._decision = decision
                raise error
            logger.debug(f"Not retrying status code {status_code}")

        self._track(status_code, headers)
        session.headers_sent = True
        self._attempt_resume = resume
        return self.handler.on_headers(status_code, headers, self._resume, status_message)

    def on_data(self, chunk: bytes) -> bool:
        if self.session.pos is not None:
            self.session.pos += len(chunk)
        return self.handler.on_data(chunk)

    def on_complete(self, trailers: tp.Optional[Headers]) -> None:
        if self._finished:
            return
        self._finished = True
        self.handler.on_complete(trailers)

    def on_error(self, error: BaseException) -> None:
        session = self.session

        if isinstance(error, ResumeValidationError):
            logger.debug(f"Discarding resumed response: {error}")
            assert session.error is not None
            self._fail(session.error)
            return

        if self._status_error is not None and error is self._status_error:
            # Decided in on_headers, the attempt was aborted to retry it.
            return

        if session.aborted:
            self._fail(error)
            return

        if not session.headers_sent:
            decision = self._decide(error)
            if decision is None:
                self._fail(error)
                return
            self._decision = decision
            return

        if not session.tracking or session.etag is None:
            logger.debug("Cannot resume response body without a strong entity tag")
            self._fail(error)
            return

        decision = self._decide(error)
        if decision is None:
            self._fail(error)
            return

        if session.error is None:
            session.error = error
        self._decision = decision

    def _track(self, status_code: int, headers: Headers) -> None:
        session = self.session
        session.tracking = False

        if "trailer" in headers:
            return

        content_length: tp.Optional[int] = None
        if "content-length" in headers:
            try:
                content_length = int(headers["content-length"])
            except ValueError:
                return

        if status_code == 206:
            content_range = ContentRange.from_header(headers.get("content-range"))
            if content_range is None:
                return
            session.pos = content_range.start
            session.end = content_range.effective_end
        elif status_code == 200:
            session.pos = 0
            session.end = content_length
        else:
            return

        etag = headers.get("etag")
        session.etag = etag if etag and not is_weak_etag(etag) else None
        session.tracking = True

    def _validate_resumed(self, status_code: int, headers: Headers) -> None:
        session = self.session

        if status_code != 206:
            raise ResumeValidationError(f"Expected status code 206, got {status_code}")

        if headers.get("etag") != session.etag:
            raise ResumeValidationError("Entity tag of the resumed response does not match")

        content_range = ContentRange.from_header(headers.get("content-range"))
        if content_range is None:
            raise ResumeValidationError("Resumed response has no valid Content-Range")

        if content_range.start != session.pos:
            raise ResumeValidationError(
                f"Resumed response starts at byte {content_range.start}, expected {session.pos}"
            )

        end = content_range.effective_end
        if session.end is not None and end != session.end:
            raise ResumeValidationError(f"Resumed response ends at byte {end}, expected {session.end}")

        if session.end is None:
            session.end = end


def resume_interceptor(dispatch: Dispatch) -> Dispatch:
    async def resume_dispatch(opts: RequestOptions, handler: Handler) -> None:
        if not opts.idempotent or opts.upgrade or not retries_enabled(opts):
            await dispatch(opts, handler)
            return
        await ResumeController(opts, handler).run(dispatch)

    return resume_dispatch
