import base64
import dataclasses
import datetime
import logging
import os
import re
import sys
import time
from enum import Enum
from http import HTTPStatus
from logging import Logger
from typing import Any, Optional, Self
from urllib import parse

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from mypy_boto3_s3.client import S3Client
from pythonjsonlogger.jsonlogger import JsonFormatter
from pyvips import Error as VipsError, Image, Size as VipsSize  # type: ignore

import imgedge
from imgedge.config import Config, ResizeFit
from imgedge.typing import Header, HttpPath, OriginRequestEvent, ResponseResult, S3Key

NOT_FOUND_BODY = 'Image not found'
INTERNAL_ERROR_BODY = 'Internal Server Error'
VARY = 'Accept'

# Milliseconds kept back from the Lambda deadline. libvips cannot be interrupted, so the
# deadline is only checked between steps; this margin must cover the slowest transcode.
LAMBDA_EXPIRATION_MARGIN = 3000

# Height box for width-only resizing; libvips' largest coordinate.
VIPS_MAX_COORD = 10000000

LOSSY_FORMATS = frozenset(['jpeg', 'webp', 'avif'])

width_re = re.compile(r'\s*([+-]?[0-9]+)')


class MyJsonFormatter(JsonFormatter):

  def __init__(self) -> None:
    super().__init__(json_ensure_ascii=False)

  def add_fields(self, log_record: Any, record: Any, message_dict: Any) -> None:
    log_record['_ts'] = datetime.datetime.now(datetime.UTC).strftime('%Y-%m-%dT%H:%M:%S.%fZ')

    if log_record.get('level'):
      log_record['level'] = log_record['level'].upper()
    else:
      log_record['level'] = record.levelname

    log_record['version'] = imgedge.version

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

# Fails the import, and so every invocation, on an invalid configuration.
config = Config.from_env(os.environ)


@dataclasses.dataclass(frozen=True)
class Resolved:
  value: str
  substituted: bool


@dataclasses.dataclass(eq=True, frozen=True)
class ImageParams:
  requested_width: int
  requested_format: str
  width: int
  format: str
  format_substituted: bool
  exact_width: bool


class FailureKind(Enum):
  NOT_FOUND = 0
  TRANSPORT = 1
  TRANSCODE = 2
  TIMEOUT = 3

  def status(self) -> HTTPStatus:
    if self == FailureKind.NOT_FOUND:
      return HTTPStatus.NOT_FOUND
    return HTTPStatus.INTERNAL_SERVER_ERROR

  def body(self) -> str:
    if self == FailureKind.NOT_FOUND:
      return NOT_FOUND_BODY
    return INTERNAL_ERROR_BODY


@dataclasses.dataclass(frozen=True)
class Failure:
  kind: FailureKind
  # Internal detail; logged, never sent to the client.
  reason: str


@dataclasses.dataclass(frozen=True)
class Redirect:
  location: str
  cache_control: str


@dataclasses.dataclass(frozen=True)
class Success:
  b64_body: str
  content_type: str
  cache_control: str
  vary: str
  vips_us: int
  img_size: int


Outcome = Redirect | Success | Failure


@dataclasses.dataclass(frozen=True)
class Deadline:
  at_ns: int

  @classmethod
  def after_ms(cls, ms: int) -> Self:
    return cls(time.monotonic_ns() + ms * 1000000)

  @classmethod
  def for_invocation(cls, timeout_ms: int, remaining_ms: Optional[int]) -> Self:
    if remaining_ms is None:
      return cls.after_ms(timeout_ms)
    return cls.after_ms(min(timeout_ms, remaining_ms - LAMBDA_EXPIRATION_MARGIN))

  def expired(self) -> bool:
    return self.at_ns <= time.monotonic_ns()


def parse_width(value: str) -> Optional[int]:
  m = width_re.match(value)
  if m is None:
    return None
  return int(m[1])


def get_param(qs: dict[str, list[str]], name: str) -> Optional[str]:
  if name not in qs or len(qs[name]) == 0:
    return None
  return qs[name][0]


def parse_request(qs: dict[str, list[str]], config: Config) -> tuple[int, str]:
  w = get_param(qs, 'w')
  width = None if w is None else parse_width(w)
  if width is None:
    width = config.default_width

  fmt = get_param(qs, 'format')
  if fmt is None:
    fmt = config.default_format

  return width, fmt


def resolve_format(requested: str, config: Config) -> Resolved:
  if requested in config.allowed_formats:
    return Resolved(requested, False)
  return Resolved(config.default_format, True)


def snap_width(requested: int, widths: tuple[int, ...]) -> int:
  # min() keeps the first of equally near candidates.
  return min(widths, key=lambda c: abs(c - requested))


def normalize(requested_width: int, requested_format: str, config: Config) -> ImageParams:
  fmt = resolve_format(requested_format, config)
  return ImageParams(
      requested_width=requested_width,
      requested_format=requested_format,
      width=snap_width(requested_width, config.allowed_widths),
      format=fmt.value,
      format_substituted=fmt.substituted,
      exact_width=requested_width in config.allowed_widths)


def canonical_location(path: HttpPath, params: ImageParams, config: Config) -> str:
  location = f'{path}?w={params.width}'
  if params.format != config.default_format:
    location += f'&format={params.format}'
  return location


def key_from_path(path: HttpPath) -> S3Key:
  return S3Key(parse.unquote(path[1:]))


def is_not_found_client_error(exception: ClientError) -> bool:
  error = exception.response.get('Error', {})
  if error.get('Code') == 'NoSuchKey':
    return True
  if error.get('Code') in ['NotFound', '404']:
    return True
  return exception.response.get('ResponseMetadata', {}).get('HTTPStatusCode') == 404


def cache_control(max_age: int) -> str:
  return f'max-age={max_age}'


class ObjectStore:

  def __init__(self, s3: S3Client, bucket: str):
    self.s3 = s3
    self.bucket = bucket

  def fetch(self, key: S3Key) -> bytes | Failure:
    try:
      res = self.s3.get_object(Bucket=self.bucket, Key=key)
      return res['Body'].read()
    except ClientError as e:
      if is_not_found_client_error(e):
        return Failure(FailureKind.NOT_FOUND, str(e))
      return Failure(FailureKind.TRANSPORT, str(e))
    except BotoCoreError as e:
      return Failure(FailureKind.TRANSPORT, str(e))
    except Exception as e:
      return Failure(FailureKind.TRANSPORT, f'{type(e).__name__}: {e}')


class Transcoder:
  vips_sizes = {
      ResizeFit.INSIDE: VipsSize.BOTH,
      ResizeFit.SHRINK: VipsSize.DOWN,
      ResizeFit.ENLARGE: VipsSize.UP,
  }

  def __init__(self, fit: ResizeFit, quality: int):
    self.fit = fit
    self.quality = quality

  def save_options(self, fmt: str) -> dict[str, Any]:
    if fmt in LOSSY_FORMATS:
      return {'Q': self.quality}
    return {}

  def transcode(self, data: bytes, width: int, fmt: str) -> bytes | Failure:
    try:
      image: Image = Image.thumbnail_buffer(
          data, width, height=VIPS_MAX_COORD, size=self.vips_sizes[self.fit])
      return image.write_to_buffer(f'.{fmt}', **self.save_options(fmt))
    except VipsError as e:
      return Failure(FailureKind.TRANSCODE, str(e))
    except Exception as e:
      return Failure(FailureKind.TRANSCODE, f'{type(e).__name__}: {e}')


class ImgServer:
  instances: dict[Config, 'ImgServer'] = {}

  def __init__(
      self,
      log: logging.Logger,
      config: Config,
      store: ObjectStore,
      transcoder: Transcoder,
  ):
    self.log = log
    self.config = config
    self.store = store
    self.transcoder = transcoder
    self.log_context: dict[str, Any] = {'path': '', 'qstr': ''}

  @classmethod
  def from_config(cls, log: Logger, config: Config) -> 'ImgServer':
    if config not in cls.instances:
      timeout = config.timeout_ms / 1000
      s3 = boto3.client(
          's3',
          region_name=config.s3_region,
          config=BotoConfig(
              connect_timeout=timeout,
              read_timeout=timeout,
              retries={
                  'mode': 'standard',
                  'total_max_attempts': 1,
              }))
      cls.instances[config] = cls(
          log=log,
          config=config,
          store=ObjectStore(s3, config.s3_bucket),
          transcoder=Transcoder(config.resize_fit, config.quality))

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

  def set_log_context(self, path: HttpPath, qstr: str) -> None:
    self.log_context = {'path': str(path), 'qstr': qstr}

  def transform(self, key: S3Key, params: ImageParams, deadline: Deadline) -> Success | Failure:
    match self.store.fetch(key):
      case Failure() as failure:
        return failure
      case bytes() as original:
        pass
      case _:
        raise Exception('system error')

    if deadline.expired():
      return Failure(FailureKind.TIMEOUT, 'deadline exceeded after fetch')

    start_ns = time.time_ns()

    match self.transcoder.transcode(original, params.width, params.format):
      case Failure() as failure:
        return failure
      case bytes() as transformed:
        pass
      case _:
        raise Exception('system error')

    vips_us = (time.time_ns() - start_ns) // 1000

    if deadline.expired():
      return Failure(FailureKind.TIMEOUT, 'deadline exceeded after transcode')

    return Success(
        b64_body=base64.b64encode(transformed).decode(),
        content_type=f'image/{params.format}',
        cache_control=cache_control(self.config.cache_max_age),
        vary=VARY,
        vips_us=vips_us,
        img_size=len(transformed))

  def report(self, failure: Failure, key: S3Key, params: ImageParams) -> None:
    detail = {
        'kind': failure.kind.name,
        'reason': failure.reason,
        'key': key,
        'requested_width': params.requested_width,
        'requested_format': params.requested_format,
        'width': params.width,
        'format': params.format,
    }
    if failure.kind == FailureKind.NOT_FOUND:
      self.log_warning('not found', detail)
    else:
      self.log_error('failed', detail)

  def process(self, path: HttpPath, qs: dict[str, list[str]], deadline: Deadline) -> Outcome:
    requested_width, requested_format = parse_request(qs, self.config)
    params = normalize(requested_width, requested_format, self.config)

    if not params.exact_width:
      location = canonical_location(path, params, self.config)
      self.log_debug(
          'redirect', {
              'requested_width': params.requested_width,
              'width': params.width,
              'format': params.format,
              'location': location,
          })
      return Redirect(location=location, cache_control=cache_control(self.config.redirect_max_age))

    key = key_from_path(path)
    outcome = self.transform(key, params, deadline)
    if isinstance(outcome, Failure):
      self.report(outcome, key, params)
    return outcome


def header(key: str, value: str) -> list[Header]:
  return [{'key': key, 'value': value}]


def to_response(outcome: Outcome) -> ResponseResult:
  match outcome:
    case Redirect():
      return {
          'status': str(HTTPStatus.MOVED_PERMANENTLY.value),
          'statusDescription': HTTPStatus.MOVED_PERMANENTLY.phrase,
          'headers': {
              'location': header('Location', outcome.location),
              'cache-control': header('Cache-Control', outcome.cache_control),
          },
      }
    case Success():
      return {
          'status': str(HTTPStatus.OK.value),
          'statusDescription': HTTPStatus.OK.phrase,
          'body': outcome.b64_body,
          'bodyEncoding': 'base64',
          'headers': {
              'content-type': header('Content-Type', outcome.content_type),
              'cache-control': header('Cache-Control', outcome.cache_control),
              'vary': header('Vary', outcome.vary),
          },
      }
    case Failure():
      status = outcome.kind.status()
      return {
          'status': str(status.value),
          'statusDescription': status.phrase,
          'body': outcome.kind.body(),
          'bodyEncoding': 'text',
          'headers': {
              'content-type': header('Content-Type', 'text/plain'),
          },
      }
    case _:
      raise Exception('system error')


def lambda_main(event: OriginRequestEvent, remaining_ms: Optional[int] = None) -> ResponseResult:
  req = event['Records'][0]['cf']['request']
  server = ImgServer.from_config(logger, config)

  path = req['uri']
  qstr = req['querystring']

  server.set_log_context(path, qstr)
  deadline = Deadline.for_invocation(config.timeout_ms, remaining_ms)
  outcome = server.process(path, parse.parse_qs(qstr), deadline)

  match outcome:
    case Success():
      server.log_debug(
          'responded', {
              'status': HTTPStatus.OK.value,
              'content_type': outcome.content_type,
              'img_size': outcome.img_size,
              'vips_us': outcome.vips_us,
          })
    case Failure():
      server.log_debug('responded', {'status': outcome.kind.status().value})

  return to_response(outcome)
