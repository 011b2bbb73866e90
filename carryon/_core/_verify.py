from __future__ import annotations

import base64
import hashlib
import logging
import typing as tp
from dataclasses import dataclass

from carryon._core._handler import AbortFn, DecoratorHandler, Dispatch, Handler, ResumeFn
from carryon._core._headers import Headers
from carryon._core.models import RequestOptions
from carryon._exceptions import VerificationError

logger = logging.getLogger("carryon.core.verify")


@dataclass(frozen=True)
class VerifyOptions:
    """Which announced properties of a response body are checked once it completed."""

    hash: bool = True
    size: bool = True


def verify_options(verify: tp.Union[bool, VerifyOptions, None]) -> tp.Optional[VerifyOptions]:
    if verify is True:
        return VerifyOptions()
    if isinstance(verify, VerifyOptions) and (verify.hash or verify.size):
        return verify
    return None


class VerifyHandler(DecoratorHandler):
    """
    Checks the body of each exchange against `Content-Length` and `Content-MD5`.

    A mismatch is reported through `on_error` instead of completing.
    """

    def __init__(self, handler: Handler, options: VerifyOptions) -> None:
        super().__init__(handler)
        self.options = options
        self._content_length: tp.Optional[int] = None
        self._content_md5: tp.Optional[str] = None
        self._hasher: tp.Optional[tp.Any] = None
        self._pos = 0

    def on_connect(self, abort: AbortFn) -> None:
        self._content_length = None
        self._content_md5 = None
        self._hasher = None
        self._pos = 0
        super().on_connect(abort)

    def on_headers(self, status_code: int, headers: Headers, resume: ResumeFn, status_message: str) -> bool:
        if self.options.size and "content-length" in headers:
            try:
                self._content_length = int(headers["content-length"])
            except ValueError:
                self._content_length = None
        if self.options.hash and "content-md5" in headers:
            self._content_md5 = headers["content-md5"].strip()
            self._hasher = hashlib.md5()
        return super().on_headers(status_code, headers, resume, status_message)

    def on_data(self, chunk: bytes) -> bool:
        self._pos += len(chunk)
        if self._hasher is not None:
            self._hasher.update(chunk)
        return super().on_data(chunk)

    def on_complete(self, trailers: tp.Optional[Headers]) -> None:
        if self._content_length is not None and self._pos != self._content_length:
            logger.debug(f"Received {self._pos} bytes, Content-Length announced {self._content_length}")
            super().on_error(
                VerificationError("Response Content-Length mismatch", expected=self._content_length, actual=self._pos)
            )
            return

        if self._hasher is not None:
            digest = base64.b64encode(self._hasher.digest()).decode("ascii")
            if digest != self._content_md5:
                logger.debug(f"Response body digest {digest} does not match Content-MD5 {self._content_md5}")
                super().on_error(
                    VerificationError("Response Content-MD5 mismatch", expected=self._content_md5, actual=digest)
                )
                return

        super().on_complete(trailers)


def verify_interceptor(dispatch: Dispatch) -> Dispatch:
    async def verify_dispatch(opts: RequestOptions, handler: Handler) -> None:
        options = verify_options(opts.verify)
        if options is None or opts.upgrade or opts.method == "HEAD":
            await dispatch(opts, handler)
            return
        await dispatch(opts, VerifyHandler(handler, options))

    return verify_dispatch
