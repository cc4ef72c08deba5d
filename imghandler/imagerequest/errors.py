from http import HTTPStatus

from imghandler.typing import ErrorBody


class ImageHandlerError(Exception):
  status: HTTPStatus
  code: str
  message: str

  def __init__(self, status: HTTPStatus, code: str, message: str):
    super().__init__(message)
    self.status = status
    self.code = code
    self.message = message

  def __repr__(self) -> str:
    return f'ImageHandlerError({int(self.status)}, {self.code!r}, {self.message!r})'

  def to_body(self) -> ErrorBody:
    return {
        'status': int(self.status),
        'code': self.code,
        'message': self.message,
    }
