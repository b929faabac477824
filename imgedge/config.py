import dataclasses
from enum import Enum
from typing import Mapping, Self

ENV_PREFIX = 'IMGEDGE_'

# One year in seconds
REDIRECT_MAX_AGE = 60 * 60 * 24 * 365

# Formats the encoder can write, keyed by the name used in `format=` and `image/<format>`.
KNOWN_FORMATS = frozenset(['jpeg', 'webp', 'avif', 'png', 'gif'])

DEFAULTS = {
    'ALLOWED_WIDTHS': '64,128,256,320,480,640,768,1024,1280',
    'ALLOWED_FORMATS': 'jpeg,webp,avif,png',
    'DEFAULT_WIDTH': '1024',
    'DEFAULT_FORMAT': 'jpeg',
    'RESIZE_FIT': 'inside',
    'CACHE_MAX_AGE': str(REDIRECT_MAX_AGE),
    'REDIRECT_MAX_AGE': str(REDIRECT_MAX_AGE),
    'QUALITY': '80',
    'TIMEOUT_MS': '25000',
    'S3_REGION': 'us-east-1',
    'S3_BUCKET': 'images',
}


class ConfigurationError(Exception):
  pass


class ResizeFit(Enum):
  # Scale to the target width, up or down, without cropping.
  INSIDE = 0
  # Like INSIDE, but never enlarge.
  SHRINK = 1
  # Like INSIDE, but never reduce.
  ENLARGE = 2


def parse_int(name: str, value: str) -> int:
  try:
    return int(value)
  except ValueError:
    raise ConfigurationError(f'invalid "{name}": {value}')


def parse_list(value: str) -> list[str]:
  return [v.strip() for v in value.split(',') if v.strip() != '']


@dataclasses.dataclass(eq=True, frozen=True)
class Config:
  allowed_widths: tuple[int, ...]
  allowed_formats: tuple[str, ...]
  default_width: int
  default_format: str
  resize_fit: ResizeFit
  cache_max_age: int
  redirect_max_age: int
  quality: int
  timeout_ms: int
  s3_region: str
  s3_bucket: str

  def __post_init__(self) -> None:
    if len(self.allowed_widths) == 0:
      raise ConfigurationError('no allowed widths')
    for width in self.allowed_widths:
      if width <= 0:
        raise ConfigurationError(f'allowed width must be positive: {width}')
    if self.default_width not in self.allowed_widths:
      raise ConfigurationError(f'default width not allowed: {self.default_width}')

    if len(self.allowed_formats) == 0:
      raise ConfigurationError('no allowed formats')
    for fmt in self.allowed_formats:
      if fmt not in KNOWN_FORMATS:
        raise ConfigurationError(f'unsupported format: {fmt}')
    if self.default_format not in self.allowed_formats:
      raise ConfigurationError(f'default format not allowed: {self.default_format}')

    if self.cache_max_age < 0:
      raise ConfigurationError(f'negative cache max-age: {self.cache_max_age}')
    if self.redirect_max_age < 0:
      raise ConfigurationError(f'negative redirect max-age: {self.redirect_max_age}')
    if not 1 <= self.quality <= 100:
      raise ConfigurationError(f'quality out of range: {self.quality}')
    if self.timeout_ms <= 0:
      raise ConfigurationError(f'timeout must be positive: {self.timeout_ms}')
    if self.s3_region == '' or self.s3_bucket == '':
      raise ConfigurationError('S3 region and bucket are required')

  @classmethod
  def from_env(cls, env: Mapping[str, str]) -> Self:
    """Build the configuration from `IMGEDGE_*` variables, falling back to DEFAULTS.

    Lambda@Edge does not pass environment variables, so a deployed function
    always runs with DEFAULTS. Raises ConfigurationError on any invalid value.
    """

    def get(name: str) -> str:
      return env.get(f'{ENV_PREFIX}{name}', DEFAULTS[name])

    fit = get('RESIZE_FIT')
    try:
      resize_fit = ResizeFit[fit.upper()]
    except KeyError:
      raise ConfigurationError(f'invalid "RESIZE_FIT": {fit}')

    widths = parse_list(get('ALLOWED_WIDTHS'))

    return cls(
        allowed_widths=tuple(parse_int('ALLOWED_WIDTHS', w) for w in widths),
        allowed_formats=tuple(parse_list(get('ALLOWED_FORMATS'))),
        default_width=parse_int('DEFAULT_WIDTH', get('DEFAULT_WIDTH')),
        default_format=get('DEFAULT_FORMAT'),
        resize_fit=resize_fit,
        cache_max_age=parse_int('CACHE_MAX_AGE', get('CACHE_MAX_AGE')),
        redirect_max_age=parse_int('REDIRECT_MAX_AGE', get('REDIRECT_MAX_AGE')),
        quality=parse_int('QUALITY', get('QUALITY')),
        timeout_ms=parse_int('TIMEOUT_MS', get('TIMEOUT_MS')),
        s3_region=get('S3_REGION'),
        s3_bucket=get('S3_BUCKET'))
