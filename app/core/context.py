import contextvars

_request_id: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="-")
_application_number: contextvars.ContextVar[str] = contextvars.ContextVar(
    "application_number", default="-"
)
_message_id: contextvars.ContextVar[str] = contextvars.ContextVar("message_id", default="-")


def set_request_id(request_id: str) -> None:
    _request_id.set(request_id)


def get_request_id() -> str:
    return _request_id.get()


def set_application_number(application_number: str | None) -> None:
    _application_number.set(application_number or "-")


def get_application_number() -> str:
    return _application_number.get()


def set_message_id(message_id: str | None) -> None:
    _message_id.set(message_id or "-")


def get_message_id() -> str:
    return _message_id.get()


def clear_context() -> None:
    _request_id.set("-")
    _application_number.set("-")
    _message_id.set("-")
