from typing import NamedTuple


class ApiError(NamedTuple):
    message: str
    status: int = 400
    detail: str = ""


def validation_error(message: str) -> ApiError:
    return ApiError(message, 400)


def not_found(message: str) -> ApiError:
    return ApiError(message, 404)


def upstream_error(message: str, detail: str = "") -> ApiError:
    return ApiError(message, 502, detail)


def persistence_error(message: str, detail: str = "") -> ApiError:
    return ApiError(message, 500, detail)
