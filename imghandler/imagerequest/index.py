import base64
import dataclasses
import datetime
import email.utils
import hashlib
import hmac
import json
import logging
import math
import os
import re
import sys
from enum import Enum
from http import HTTPStatus
from logging import Logger
from typing import Any, Mapping, Optional, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from dateutil import parser
from mypy_boto3_s3.client import S3Client
from pythonjsonlogger.jsonlogger import JsonFormatter

import imghandler
from imghandler.imagerequest.errors import ImageHandlerError
from imghandler.imagerequest.secret import SecretProvider
from imghandler.imagerequest.thumbor import (
    QUALITY_FORMATS,
    TO_FORMATS,
    RewriteRule,
    ThumborMapper,
    parse_custom_path,
    parse_image_key
)
from imghandler.typing import (
    DecodedRequest,
    ErrorResult,
    HttpPath,
    ImageEdits,
    ImageRequestEvent,
    ImageRequestPayload,
    S3Key
)

DEFAULT_CACHE_CONTROL = 'max-age=31536000,public'
DEFAULT_REDUCTION_EFFORT = 4
DEFAULT_IMAGE_NAME = 'default.jpg'
SVG_CONTENT_TYPE = 'image/svg+xml'
GENERIC_CONTENT_TYPES = ['binary/octet-stream', 'application/octet-stream']

default_re = re.compile(r'(/?)([0-9a-zA-Z+/]{4})*(([0-9a-zA-Z+/]{2}==)|([0-9a-zA-Z+/]{3}=))?')
thumbor_re = re.compile(
    r'^(/?)((fit-in)?|(filters:.+\(.?\))?|(unsafe)?)'
    r'(((.(?!(\.[^.\\/]+$)))*$)|.*(\.jpg$|.\.png$|\.webp$|\.tiff$|\.jpeg$|\.svg$))',
    re.IGNORECASE)

IMAGE_SIGNATURES = {
    '89504E47': 'image/png',
    'FFD8FFDB': 'image/jpeg',
    'FFD8FFE0': 'image/jpeg',
    'FFD8FFEE': 'image/jpeg',
    'FFD8FFE1': 'image/jpeg',
    '52494646': 'image/webp',
    '49492A00': 'image/tiff',
    '4D4D002A': 'image/tiff',
}


class MyJsonFormatter(JsonFormatter):

  def __init__(self) -> None:
    super().__init__(json_ensure_ascii=False)

  def add_fields(self, log_record: Any, record: Any, message_dict: Any) -> None:
    log_record['_ts'] = datetime.datetime.now(datetime.UTC).strftime('%Y-%m-%dT%H:%M:%S.%fZ')

    if log_record.get('level'):
      log_record['level'] = log_record['level'].upper()
    else:
      log_record['level'] = record.levelname

    log_record['version'] = imghandler.version

    super().add_fields(log_record, record, message_dict)


def init_logging() -> Logger:
  # https://stackoverflow.com/a/11548754/1160341
  logger = logging.getLogger()
  logger.setLevel(logging.DEBUG)
  for h in logger.handlers:
    logger.removeHandler(h)

  logging.getLogger('botocore').setLevel(logging.WARNING)
  logging.getLogger('urllib3').setLevel(logging.INFO)

  log = logging.getLogger(__name__)
  log_handler = logging.StreamHandler()
  log_handler.setFormatter(MyJsonFormatter())
  log_handler.setLevel(logging.DEBUG)
  log_handler.setStream(sys.stderr)
  log.addHandler(log_handler)
  log.propagate = False

  return log


logger = init_logging()


class RequestType(Enum):
  DEFAULT = 'Default'
  THUMBOR = 'Thumbor'
  CUSTOM = 'Custom'


class ImageFormatType(Enum):
  JPEG = 'jpeg'
  PNG = 'png'
  WEBP = 'webp'
  TIFF = 'tiff'
  HEIF = 'heif'

  @classmethod
  def from_value(cls, value: Any) -> 'ImageFormatType':
    name = TO_FORMATS.get(value.lower()) if isinstance(value, str) else None
    if name is None:
      raise ImageHandlerError(
          HTTPStatus.BAD_REQUEST,
          'ImageEdits::InvalidOutputFormat',
          f'The output format "{value}" is not supported. '
          f'Use one of {", ".join(QUALITY_FORMATS)}.')
    return cls(name)


@dataclasses.dataclass(eq=True, frozen=True)
class SignatureConfig:
  enabled: bool
  secret_id: Optional[str]
  secret_key_field: Optional[str]


@dataclasses.dataclass(eq=True, frozen=True)
class Config:
  region: Optional[str]
  source_buckets: Optional[Tuple[str, ...]]
  auto_webp: bool
  signature: SignatureConfig
  rewrite: RewriteRule
  fallback_bucket: Optional[str]

  @classmethod
  def from_environ(cls, environ: Mapping[str, str]) -> 'Config':
    source_buckets = environ.get('SOURCE_BUCKETS')

    return cls(
        region=environ.get('AWS_REGION'),
        source_buckets=None if source_buckets is None else tuple(
            b for b in re.sub(r'\s+', '', source_buckets).split(',') if b != ''),
        auto_webp=environ.get('AUTO_WEBP') == 'Yes',
        signature=SignatureConfig(
            enabled=environ.get('ENABLE_SIGNATURE') == 'Yes',
            secret_id=environ.get('SECRETS_MANAGER'),
            secret_key_field=environ.get('SECRET_KEY')),
        rewrite=RewriteRule(
            match_pattern=environ.get('REWRITE_MATCH_PATTERN'),
            substitution=environ.get('REWRITE_SUBSTITUTION')),
        fallback_bucket=environ.get('DEFAULT_FALLBACK_IMAGE_BUCKET') or None)

  def allowed_source_buckets(self) -> list[str]:
    if not self.source_buckets:
      raise ImageHandlerError(
          HTTPStatus.BAD_REQUEST,
          'GetAllowedSourceBuckets::NoSourceBuckets',
          'The SOURCE_BUCKETS variable could not be read. Please check that it is not empty and '
          'contains at least one source bucket, or multiple buckets separated by commas.')
    return list(self.source_buckets)


@dataclasses.dataclass(frozen=True)
class OriginalImage:
  key: S3Key
  content_type: str
  cache_control: str
  expires: Optional[str]
  last_modified: Optional[str]
  body: bytes


@dataclasses.dataclass(frozen=True)
class ImageRequestInfo:
  request_type: RequestType
  bucket: str
  key: S3Key
  edits: ImageEdits
  content_type: str
  original_image: bytes
  headers: Optional[dict[str, str]] = None
  output_format: Optional[ImageFormatType] = None
  cache_control: str = DEFAULT_CACHE_CONTROL
  expires: Optional[str] = None
  last_modified: Optional[str] = None
  reduction_effort: Optional[int] = None

  def to_payload(self) -> ImageRequestPayload:
    payload: ImageRequestPayload = {
        'requestType': self.request_type.value,
        'bucket': self.bucket,
        'key': self.key,
        'edits': self.edits,
        'contentType': self.content_type,
        'originalImage': base64.b64encode(self.original_image).decode(),
        'cacheControl': self.cache_control,
    }

    if self.headers is not None:
      payload['headers'] = self.headers
    if self.output_format is not None:
      payload['outputFormat'] = self.output_format.value
    if self.expires is not None:
      payload['expires'] = self.expires
    if self.last_modified is not None:
      payload['lastModified'] = self.last_modified
    if self.reduction_effort is not None:
      payload['reductionEffort'] = self.reduction_effort

    return payload


def json_dump(obj: Any) -> str:
  return json.dumps(obj, separators=(',', ':'), sort_keys=True)


def error_result(error: ImageHandlerError) -> ErrorResult:
  return {
      'statusCode': int(error.status),
      'headers': {
          'Content-Type': 'application/json',
      },
      'body': json_dump(error.to_body()),
  }


def is_not_found_client_error(exception: ClientError) -> bool:
  if 'Error' not in exception.response:
    return False
  if 'Code' not in exception.response['Error']:
    return False
  return exception.response['Error']['Code'] in ['404', 'NoSuchKey']


def get_header(headers: Optional[Mapping[str, str]], name: str, default: str = '') -> str:
  if not headers:
    return default

  for k, v in headers.items():
    if k.lower() == name:
      return v

  return default


def default_image_key(key: S3Key) -> S3Key:
  return S3Key(key[:key.rfind('/') + 1] + DEFAULT_IMAGE_NAME)


def format_http_date(value: datetime.datetime | str) -> str:
  dt = parser.parse(value) if isinstance(value, str) else value
  if dt.tzinfo is None:
    dt = dt.replace(tzinfo=datetime.timezone.utc)
  return email.utils.format_datetime(dt.astimezone(datetime.timezone.utc), usegmt=True)


def infer_image_type(image: bytes) -> str:
  signature = image[:4].hex().upper()
  if signature not in IMAGE_SIGNATURES:
    raise ImageHandlerError(
        HTTPStatus.INTERNAL_SERVER_ERROR,
        'RequestTypeError',
        'The file does not have an extension and the file type could not be inferred. '
        'Please ensure that your original image is of a supported file type '
        '(jpg, png, tiff, webp, svg).')
  return IMAGE_SIGNATURES[signature]


def parse_reduction_effort(decoded: DecodedRequest) -> Optional[int]:
  if 'reductionEffort' not in decoded:
    return None

  try:
    reduction_effort = math.trunc(float(decoded['reductionEffort']))
  except (TypeError, ValueError, OverflowError):
    return DEFAULT_REDUCTION_EFFORT

  if 0 <= reduction_effort <= 6:
    return reduction_effort
  return DEFAULT_REDUCTION_EFFORT


def fix_quality_key(edits: ImageEdits, output_format: ImageFormatType) -> None:
  quality_key = next((k for k in edits if k in QUALITY_FORMATS), None)
  if quality_key is not None and quality_key != output_format.value:
    edits[output_format.value] = edits.pop(quality_key)


def cannot_decode_request() -> ImageHandlerError:
  return ImageHandlerError(
      HTTPStatus.BAD_REQUEST,
      'DecodeRequest::CannotDecodeRequest',
      'The image request you provided could not be decoded. '
      'Please check that your request is base64 encoded properly.')


def to_decoded_request(value: Any) -> DecodedRequest:
  if not isinstance(value, dict):
    raise cannot_decode_request()
  return value  # type: ignore


class ImageRequest:
  instances: dict[Config, 'ImageRequest'] = {}

  def __init__(
      self,
      log: Logger,
      config: Config,
      s3: S3Client,
      secret_provider: Optional[SecretProvider],
  ):
    self.log = log
    self.config = config
    self.s3 = s3
    self.secret_provider = secret_provider
    self.thumbor_mapper = ThumborMapper(log)
    self.log_context: dict[str, str] = {'path': '', 'request_type': ''}

  @classmethod
  def from_environ(cls, log: Logger, environ: Mapping[str, str]) -> 'ImageRequest':
    config = Config.from_environ(environ)

    if config not in cls.instances:
      s3 = boto3.client('s3', region_name=config.region)
      secret_provider = None
      if config.signature.enabled:
        secret_provider = SecretProvider(
            log, boto3.client('secretsmanager', region_name=config.region))
      cls.instances[config] = cls(
          log=log, config=config, s3=s3, secret_provider=secret_provider)

    return cls.instances[config]

  def log_warning(self, message: str, dict: dict[str, Any]) -> None:
    self.log.warning({
        'message': message,
        **self.log_context,
        **dict,
    })

  def log_debug(self, message: str, dict: dict[str, Any]) -> None:
    self.log.debug({
        'message': message,
        **self.log_context,
        **dict,
    })

  def log_error(self, message: str, dict: dict[str, Any]) -> None:
    self.log.error({
        'message': message,
        **self.log_context,
        **dict,
    })

  def set_log_context(self, path: HttpPath, request_type: str) -> None:
    self.log_context = {'path': str(path), 'request_type': request_type}

  def decode_json(self, path: HttpPath) -> Any:
    if not path:
      raise ImageHandlerError(
          HTTPStatus.BAD_REQUEST,
          'DecodeRequest::CannotReadPath',
          'The URL path you provided could not be read. '
          'Please ensure that it is properly formed according to the solution documentation.')

    encoded = path[1:] if path.startswith('/') else path
    try:
      return json.loads(base64.b64decode(encoded + '=' * (-len(encoded) % 4)).decode('utf-8'))
    except ValueError:
      raise cannot_decode_request()

  def decode_request(self, path: HttpPath) -> DecodedRequest:
    return to_decoded_request(self.decode_json(path))

  def parse_request_type(self, path: HttpPath) -> Tuple[RequestType, Optional[DecodedRequest]]:
    if default_re.fullmatch(path) is not None:
      try:
        value = self.decode_json(path)
      except ImageHandlerError as e:
        self.log_debug('not a default request', {'code': e.code})
      else:
        # Any JSON payload makes a default request, even one that is not an object.
        return RequestType.DEFAULT, to_decoded_request(value)

    if self.config.rewrite.is_defined():
      return RequestType.CUSTOM, None

    if thumbor_re.match(path) is not None:
      return RequestType.THUMBOR, None

    raise ImageHandlerError(
        HTTPStatus.BAD_REQUEST,
        'RequestType::UnrecognizedDialect',
        'The type of request you are making could not be processed. '
        'Please ensure that your original image is of a supported file type '
        '(jpg, png, tiff, webp, svg) and that your image request is provided in the correct syntax.')

  def parse_image_key(
      self,
      path: HttpPath,
      request_type: RequestType,
      decoded: Optional[DecodedRequest],
  ) -> S3Key:
    key: Any = None
    match request_type:
      case RequestType.DEFAULT:
        assert decoded is not None
        key = decoded.get('key')
      case RequestType.THUMBOR | RequestType.CUSTOM:
        key = parse_image_key(path)

    if not isinstance(key, str) or key == '':
      raise ImageHandlerError(
          HTTPStatus.NOT_FOUND,
          'ImageEdits::CannotFindImage',
          'The image you specified could not be found. '
          'Please check your request syntax as well as the bucket you specified to ensure it exists.')

    return S3Key(key)

  def check_image_bucket(self, source_buckets: list[str], target_bucket: str) -> Optional[str]:
    for bucket in source_buckets:
      if target_bucket in bucket:
        return bucket
    return self.config.fallback_bucket

  def parse_image_bucket(
      self,
      request_type: RequestType,
      key: S3Key,
      decoded: Optional[DecodedRequest],
  ) -> Optional[str]:
    source_buckets = self.config.allowed_source_buckets()
    target_bucket = key.split('/')[0]

    match request_type:
      case RequestType.DEFAULT:
        assert decoded is not None
        if 'bucket' not in decoded:
          return self.check_image_bucket(source_buckets, target_bucket)

        bucket = decoded['bucket']
        if isinstance(bucket, str):
          if bucket in source_buckets:
            return bucket
          try:
            if re.fullmatch(source_buckets[0], bucket) is not None:
              return bucket
          except re.error as e:
            self.log_warning('invalid bucket pattern', {'pattern': source_buckets[0], 'reason': str(e)})

        raise ImageHandlerError(
            HTTPStatus.FORBIDDEN,
            'ImageBucket::CannotAccessBucket',
            'The bucket you specified could not be accessed. '
            'Please check that the bucket is specified in your SOURCE_BUCKETS.')
      case RequestType.THUMBOR | RequestType.CUSTOM:
        return self.check_image_bucket(source_buckets, target_bucket)
      case _:
        raise ImageHandlerError(
            HTTPStatus.NOT_FOUND,
            'ImageBucket::CannotFindBucket',
            'The bucket you specified could not be found. '
            'Please check the spelling of the bucket name in your request.')

  def parse_image_edits(
      self,
      path: HttpPath,
      request_type: RequestType,
      decoded: Optional[DecodedRequest],
  ) -> ImageEdits:
    match request_type:
      case RequestType.DEFAULT:
        assert decoded is not None
        edits = decoded.get('edits')
        if edits is None:
          return {}
        if isinstance(edits, dict):
          return dict(edits)
      case RequestType.THUMBOR | RequestType.CUSTOM:
        return self.thumbor_mapper.map_path_to_edits(path)

    raise ImageHandlerError(
        HTTPStatus.BAD_REQUEST,
        'ImageEdits::CannotParseEdits',
        'The edits you provided could not be parsed. '
        'Please check the syntax of your request and refer to the documentation.')

  def parse_image_headers(
      self,
      request_type: RequestType,
      decoded: Optional[DecodedRequest],
  ) -> Optional[dict[str, str]]:
    if request_type == RequestType.DEFAULT and decoded is not None and decoded.get('headers'):
      return decoded['headers']
    return None

  def maybe_http_date(self, value: Optional[datetime.datetime | str]) -> Optional[str]:
    if value is None:
      return None
    try:
      return format_http_date(value)
    except (ValueError, OverflowError) as e:
      self.log_warning('unparsable date ignored', {'value': str(value), 'reason': str(e)})
      return None

  def get_original_image(self, bucket: Optional[str], key: S3Key) -> OriginalImage:
    if bucket is None:
      raise ImageHandlerError(
          HTTPStatus.NOT_FOUND,
          'NoSuchBucket',
          f'No source bucket matches the image {key} and no fallback bucket is configured.')

    try:
      try:
        res = self.s3.get_object(Bucket=bucket, Key=key)
      except ClientError as e:
        fallback_key = default_image_key(key)
        if not is_not_found_client_error(e) or fallback_key == key:
          raise e
        self.log_warning('original not found', {'bucket': bucket, 'key': key})
        key = fallback_key
        res = self.s3.get_object(Bucket=bucket, Key=key)
      body = res['Body'].read()
    except ClientError as e:
      error = e.response.get('Error', {})
      if is_not_found_client_error(e):
        raise ImageHandlerError(
            HTTPStatus.NOT_FOUND,
            'NoSuchKey',
            f'The image {key} does not exist or the request may not be base64 encoded properly.')
      raise ImageHandlerError(
          HTTPStatus.INTERNAL_SERVER_ERROR,
          error.get('Code', 'InternalError'),
          error.get('Message', str(e)))
    except BotoCoreError as e:
      self.log_error('failed to get original', {'bucket': bucket, 'key': key, 'reason': repr(e)})
      raise ImageHandlerError(HTTPStatus.INTERNAL_SERVER_ERROR, type(e).__name__, str(e))

    content_type = res.get('ContentType')
    if content_type is None:
      content_type = 'image'
    elif content_type in GENERIC_CONTENT_TYPES:
      content_type = infer_image_type(body)

    expires = self.maybe_http_date(res.get('Expires'))
    last_modified = self.maybe_http_date(res.get('LastModified'))

    return OriginalImage(
        key=key,
        content_type=content_type,
        cache_control=res.get('CacheControl', DEFAULT_CACHE_CONTROL),
        expires=expires,
        last_modified=last_modified,
        body=body)

  def get_output_format(
      self,
      headers: Optional[Mapping[str, str]],
      request_type: RequestType,
      decoded: Optional[DecodedRequest],
      edits: ImageEdits,
  ) -> Optional[str]:
    if edits.get('toFormat'):
      return edits['toFormat']

    if self.config.auto_webp and 'image/webp' in get_header(headers, 'accept'):
      return ImageFormatType.WEBP.value

    if request_type == RequestType.DEFAULT and decoded is not None:
      return decoded.get('outputFormat')

    return None

  def negotiate_format(
      self,
      headers: Optional[Mapping[str, str]],
      request_type: RequestType,
      decoded: Optional[DecodedRequest],
      edits: ImageEdits,
      content_type: str,
  ) -> Tuple[Optional[ImageFormatType], Optional[int]]:
    output_format: Optional[ImageFormatType] = None
    reduction_effort: Optional[int] = None
    is_svg = content_type == SVG_CONTENT_TYPE

    # Edited SVG images without an explicit format are rasterized to PNG.
    if is_svg and 0 < len(edits) and not edits.get('toFormat'):
      output_format = ImageFormatType.PNG

    if not is_svg or edits.get('toFormat') or output_format is not None:
      candidate = self.get_output_format(headers, request_type, decoded, edits)
      if candidate is not None:
        output_format = ImageFormatType.from_value(candidate)

        if output_format == ImageFormatType.WEBP and request_type == RequestType.DEFAULT:
          assert decoded is not None
          reduction_effort = parse_reduction_effort(decoded)

    return output_format, reduction_effort

  def validate_request_signature(self, event: ImageRequestEvent) -> None:
    signature_config = self.config.signature
    if not signature_config.enabled:
      return

    query = event.get('queryStringParameters') or {}
    signature = query.get('signature')
    if not signature:
      raise ImageHandlerError(
          HTTPStatus.BAD_REQUEST,
          'AuthorizationQueryParametersError',
          'Query-string requires the signature parameter.')

    try:
      if self.secret_provider is None or signature_config.secret_id is None:
        raise Exception('secret provider is not configured')

      secret = json.loads(self.secret_provider.get_secret(signature_config.secret_id))
      key: str = secret[signature_config.secret_key_field]
      path = event.get('path') or ''
      digest = hmac.new(key.encode('utf-8'), path.encode('utf-8'), hashlib.sha256).hexdigest()

      # Signature is made with the full, undecoded path.
      if not hmac.compare_digest(signature.encode('utf-8'), digest.encode('utf-8')):
        raise ImageHandlerError(
            HTTPStatus.FORBIDDEN, 'SignatureDoesNotMatch', 'Signature does not match.')
    except ImageHandlerError:
      raise
    except Exception as e:
      self.log_error('error occurred while checking signature', {'reason': repr(e)})
      raise ImageHandlerError(
          HTTPStatus.INTERNAL_SERVER_ERROR,
          'SignatureValidationFailure',
          'Signature validation failed.')

  def process(self, event: ImageRequestEvent) -> ImageRequestInfo:
    path = HttpPath(event.get('path') or '')
    headers = event.get('headers') or {}

    self.validate_request_signature(event)

    request_type, decoded = self.parse_request_type(path)
    self.set_log_context(path, request_type.value)

    if request_type == RequestType.CUSTOM:
      path = parse_custom_path(path, self.config.rewrite)
      self.log_debug('path rewritten', {'rewritten': path})

    key = self.parse_image_key(path, request_type, decoded)
    bucket = self.parse_image_bucket(request_type, key, decoded)
    edits = self.parse_image_edits(path, request_type, decoded)
    original = self.get_original_image(bucket, key)
    assert bucket is not None

    output_format, reduction_effort = self.negotiate_format(
        headers, request_type, decoded, edits, original.content_type)

    content_type = original.content_type
    if output_format is not None:
      content_type = f'image/{output_format.value}'
      if request_type in [RequestType.THUMBOR, RequestType.CUSTOM]:
        fix_quality_key(edits, output_format)

    info = ImageRequestInfo(
        request_type=request_type,
        bucket=bucket,
        key=original.key,
        edits=edits,
        headers=self.parse_image_headers(request_type, decoded),
        output_format=output_format,
        content_type=content_type,
        original_image=original.body,
        cache_control=original.cache_control,
        expires=original.expires,
        last_modified=original.last_modified,
        reduction_effort=reduction_effort)

    self.log_debug(
        'done', {
            'bucket': info.bucket,
            'key': info.key,
            'edits': json_dump(info.edits),
            'output_format': None if output_format is None else output_format.value,
            'content_type': info.content_type,
        })

    return info

  def setup(self, event: ImageRequestEvent) -> ImageRequestInfo:
    self.set_log_context(HttpPath(event.get('path') or ''), '')
    try:
      return self.process(event)
    except ImageHandlerError as e:
      self.log_error('failed to set up image request', {'status': int(e.status), 'code': e.code})
      raise e


def lambda_main(event: ImageRequestEvent) -> ImageRequestInfo:
  image_request = ImageRequest.from_environ(logger, os.environ)
  return image_request.setup(event)
