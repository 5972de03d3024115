"""Failures the edge service maps to HTTP responses."""

from __future__ import annotations


class ImgProError(Exception):
    """Base class; ``status_code`` is the HTTP status the failure is served with."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class MalformedRequest(ImgProError):
    status_code = 400


class InvalidDomain(ImgProError):
    status_code = 400


class Forbidden(ImgProError):
    status_code = 403


class NotFound(ImgProError):
    status_code = 404


class MethodNotAllowed(ImgProError):
    status_code = 405


class PayloadTooLarge(ImgProError):
    status_code = 413


class UnsupportedMediaType(ImgProError):
    status_code = 415


class StorageError(ImgProError):
    status_code = 500


class UpstreamError(ImgProError):
    status_code = 503


class UpstreamTimeout(UpstreamError):
    status_code = 504
