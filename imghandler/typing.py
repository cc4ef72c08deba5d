from typing import Any, NewType, NotRequired, ReadOnly, TypedDict

HttpPath = NewType('HttpPath', str)
S3Key = NewType('S3Key', str)

ImageEdits = dict[str, Any]


class ImageRequestEvent(TypedDict):
  path: HttpPath
  headers: NotRequired[dict[str, str] | None]
  queryStringParameters: NotRequired[dict[str, str] | None]


class DecodedRequest(TypedDict):
  bucket: NotRequired[str]
  key: NotRequired[str]
  edits: NotRequired[ImageEdits]
  headers: NotRequired[dict[str, str]]
  outputFormat: NotRequired[str]
  reductionEffort: NotRequired[int | float | str]


class ErrorBody(TypedDict):
  status: ReadOnly[int]
  code: ReadOnly[str]
  message: ReadOnly[str]


class ErrorResult(TypedDict):
  statusCode: int
  headers: dict[str, str]
  body: str


class ImageRequestPayload(TypedDict):
  requestType: str
  bucket: str
  key: str
  edits: ImageEdits
  headers: NotRequired[dict[str, str]]
  outputFormat: NotRequired[str]
  contentType: str
  originalImage: str
  cacheControl: str
  expires: NotRequired[str]
  lastModified: NotRequired[str]
  reductionEffort: NotRequired[int]
