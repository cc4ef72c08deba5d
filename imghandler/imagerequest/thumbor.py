import dataclasses
import re
from http import HTTPStatus
from logging import Logger
from typing import Any, Optional
from urllib import parse

from imghandler.imagerequest.errors import ImageHandlerError
from imghandler.typing import HttpPath, ImageEdits, S3Key

# Tokens that are not part of the object key.
key_strip_re = re.compile(
    r'/\d+x\d+:\d+x\d+/|(?<=/)-?\d+x-?\d+/|filters:[^/]+|/fit-in(?=/)|^/+')
leading_slashes_re = re.compile(r'^/+')
crop_re = re.compile(r'(\d{1,6})x(\d{1,6}):(\d{1,6})x(\d{1,6})')
resize_re = re.compile(r'/(-?\d+)x(-?\d+)/')
fit_in_re = re.compile(r'(^|/)fit-in/')
filter_segment_re = re.compile(r'filters:[^/]+')
filter_re = re.compile(r'(\w+)\(([^)]*)\)')
regex_literal_re = re.compile(r'/(.+)/([a-z]*)', re.DOTALL)
js_named_group_re = re.compile(r'\(\?<(?![=!])')
js_replacement_re = re.compile(r'\$(\$|&|`|\'|\d{1,2}|<[^>]*>)')
hex_color_re = re.compile(r'#?([0-9a-fA-F]{3}|[0-9a-fA-F]{6}|[0-9a-fA-F]{8})')
position_re = re.compile(r'(100|[1-9]?[0-9])p|-?\d+')

QUALITY_FORMATS = ['jpeg', 'png', 'webp', 'tiff', 'heif']
TO_FORMATS = {
    'jpg': 'jpeg',
    'jpeg': 'jpeg',
    'png': 'png',
    'webp': 'webp',
    'tiff': 'tiff',
    'heif': 'heif',
    'heic': 'heif',
}

COLOR_NAMES = {
    'black': (0, 0, 0),
    'silver': (192, 192, 192),
    'gray': (128, 128, 128),
    'grey': (128, 128, 128),
    'white': (255, 255, 255),
    'maroon': (128, 0, 0),
    'red': (255, 0, 0),
    'purple': (128, 0, 128),
    'fuchsia': (255, 0, 255),
    'green': (0, 128, 0),
    'lime': (0, 255, 0),
    'olive': (128, 128, 0),
    'yellow': (255, 255, 0),
    'navy': (0, 0, 128),
    'blue': (0, 0, 255),
    'teal': (0, 128, 128),
    'aqua': (0, 255, 255),
    'orange': (255, 165, 0),
}

JS_FLAGS = {
    'i': re.IGNORECASE,
    'm': re.MULTILINE,
    's': re.DOTALL,
}


def invalid_value(name: str, value: str) -> ImageHandlerError:
  return ImageHandlerError(
      HTTPStatus.BAD_REQUEST,
      'ThumborMapping::InvalidFilterValue',
      f'The value "{value}" of the filter "{name}" could not be parsed.')


def parse_color(value: str) -> dict[str, float]:
  v = value.strip().lower()
  if v in COLOR_NAMES:
    r, g, b = COLOR_NAMES[v]
    return {'r': r, 'g': g, 'b': b, 'alpha': 1}

  m = hex_color_re.fullmatch(v)
  if m is None:
    raise ImageHandlerError(
        HTTPStatus.BAD_REQUEST,
        'ThumborMapping::InvalidColor',
        f'The color "{value}" could not be parsed. Use a hex value or a basic color name.')

  digits = m[1]
  if len(digits) == 3:
    digits = ''.join(c * 2 for c in digits)
  alpha = 1.0
  if len(digits) == 8:
    alpha = round(int(digits[6:8], 16) / 255, 3)
  return {
      'r': int(digits[0:2], 16),
      'g': int(digits[2:4], 16),
      'b': int(digits[4:6], 16),
      'alpha': alpha,
  }


def to_number(name: str, value: str) -> float:
  try:
    return float(value)
  except ValueError:
    raise invalid_value(name, value)


def to_int(name: str, value: str) -> int:
  try:
    return int(value.strip())
  except ValueError:
    raise invalid_value(name, value)


def expand_replacement(m: re.Match, substitution: str) -> str:
  """Expands JavaScript-style replacement tokens against a match.

  Supported tokens are ``$$``, ``$&``, ``$```, ``$'``, ``$1``..``$99`` and
  ``$<name>``. Tokens referring to groups that do not exist are kept as is.
  """

  def token(t: re.Match) -> str:
    s = t[1]
    if s == '$':
      return '$'
    if s == '&':
      return m[0]
    if s == '`':
      return m.string[:m.start()]
    if s == "'":
      return m.string[m.end():]
    if s.startswith('<'):
      name = s[1:-1]
      if name not in m.re.groupindex:
        return t[0]
      return m[name] or ''

    n = int(s)
    if 1 <= n <= m.re.groups:
      return m[n] or ''
    if 1 < len(s) and 1 <= int(s[0]) <= m.re.groups:
      return (m[int(s[0])] or '') + s[1]
    return t[0]

  return js_replacement_re.sub(token, substitution)


@dataclasses.dataclass(eq=True, frozen=True)
class RewriteRule:
  match_pattern: Optional[str]
  substitution: Optional[str]

  def is_defined(self) -> bool:
    return bool(self.match_pattern) and bool(self.substitution)

  def apply(self, path: HttpPath) -> HttpPath:
    assert self.match_pattern is not None and self.substitution is not None

    m = regex_literal_re.fullmatch(self.match_pattern)
    if m is None:
      return HttpPath(path.replace(self.match_pattern, self.substitution, 1))

    pattern, flags = m[1], m[2]
    re_flags = 0
    for f in flags:
      re_flags |= JS_FLAGS.get(f, 0)

    try:
      compiled = re.compile(js_named_group_re.sub('(?P<', pattern), re_flags)
    except re.error as e:
      raise ImageHandlerError(
          HTTPStatus.INTERNAL_SERVER_ERROR,
          'RequestType::InvalidRewritePattern',
          f'The rewrite pattern could not be compiled: {e}')

    substitution = self.substitution
    return HttpPath(
        compiled.sub(
            lambda mm: expand_replacement(mm, substitution), path, count=0 if 'g' in flags else 1))


def parse_custom_path(path: HttpPath, rule: RewriteRule) -> HttpPath:
  return rule.apply(path)


def parse_image_key(path: HttpPath) -> S3Key:
  stripped = leading_slashes_re.sub('', key_strip_re.sub('', path))
  return S3Key(parse.unquote(stripped))


def file_format_of(path: HttpPath) -> str:
  return path[path.rfind('.') + 1:].lower()


class ThumborMapper:

  def __init__(self, log: Logger):
    self.log = log

  def map_path_to_edits(self, path: HttpPath) -> ImageEdits:
    file_format = file_format_of(path)

    edits: ImageEdits = {}
    self.map_crop(path, edits)
    self.map_resize(path, edits)
    self.map_fit_in(path, edits)

    for segment in filter_segment_re.findall(path):
      for m in filter_re.finditer(segment):
        self.map_filter(m[1], m[2], file_format, edits)

    return edits

  def map_crop(self, path: HttpPath, edits: ImageEdits) -> None:
    m = crop_re.search(path)
    if m is None:
      return

    left, top, right, bottom = (int(m[i]) for i in range(1, 5))
    width = right - left
    height = bottom - top
    if width <= 0 or height <= 0:
      raise ImageHandlerError(
          HTTPStatus.BAD_REQUEST,
          'ThumborMapping::InvalidCrop',
          f'The crop area "{m[0]}" is empty or inverted.')

    edits['crop'] = {'left': left, 'top': top, 'width': width, 'height': height}

  def map_resize(self, path: HttpPath, edits: ImageEdits) -> None:
    m = resize_re.search(path)
    if m is None:
      return

    width = int(m[1])
    height = int(m[2])

    resize: dict[str, Any] = edits.setdefault('resize', {})
    resize['width'] = None if width == 0 else abs(width)
    resize['height'] = None if height == 0 else abs(height)

    if width < 0:
      edits['flop'] = True
    if height < 0:
      edits['flip'] = True

  def map_fit_in(self, path: HttpPath, edits: ImageEdits) -> None:
    if fit_in_re.search(path) is None:
      return
    edits.setdefault('resize', {})['fit'] = 'inside'

  def map_filter(self, name: str, value: str, file_format: str, edits: ImageEdits) -> None:
    match name:
      case 'autojpg':
        edits['toFormat'] = 'jpeg'
      case 'background_color':
        edits['flatten'] = {'background': parse_color(value)}
      case 'blur':
        args = [a.strip() for a in value.split(',')]
        if 1 < len(args) and args[1] != '':
          edits['blur'] = to_number(name, args[1])
        else:
          edits['blur'] = to_number(name, args[0]) / 2
      case 'convolution':
        args = value.split(',')
        if len(args) < 2:
          raise invalid_value(name, value)
        kernel = [to_number(name, v) for v in args[0].split(';')]
        width = to_int(name, args[1])
        if width <= 0:
          raise invalid_value(name, value)
        edits['convolve'] = {'width': width, 'height': len(kernel) // width, 'kernel': kernel}
      case 'equalize':
        edits['normalize'] = True
      case 'fill':
        resize = edits.setdefault('resize', {})
        resize['fit'] = 'contain'
        resize['background'] = parse_color(value)
      case 'format':
        image_format = TO_FORMATS.get(re.sub(r'[^0-9a-z]', '', value.lower()))
        if image_format is None:
          self.log.debug({'message': 'unsupported format filter ignored', 'value': value})
        else:
          edits['toFormat'] = image_format
      case 'grayscale':
        edits['grayscale'] = True
      case 'no_upscale':
        edits.setdefault('resize', {})['withoutEnlargement'] = True
      case 'proportion':
        ratio = to_number(name, value)
        resize = edits.setdefault('resize', {})
        for dim in ['width', 'height']:
          if resize.get(dim) is not None:
            resize[dim] = round(resize[dim] * ratio)
        resize['ratio'] = ratio
      case 'quality':
        quality_key = TO_FORMATS.get(file_format, 'jpeg')
        edits[quality_key] = {'quality': to_int(name, value)}
      case 'rgb':
        args = value.split(',')
        if len(args) != 3:
          raise invalid_value(name, value)
        r, g, b = (min(255.0, max(0.0, 255 * to_number(name, p) / 100)) for p in args)
        edits['tint'] = {'r': r, 'g': g, 'b': b}
      case 'rotate':
        edits['rotate'] = to_int(name, value)
      case 'sharpen':
        args = value.split(',')
        if len(args) < 2:
          raise invalid_value(name, value)
        edits['sharpen'] = 1 + to_number(name, args[1]) / 2
      case 'stretch':
        resize = edits.setdefault('resize', {})
        if resize.get('fit') != 'inside':
          resize['fit'] = 'fill'
      case 'strip_exif' | 'strip_icc':
        edits['rotate'] = None
      case 'upscale':
        edits.setdefault('resize', {})['fit'] = 'inside'
      case 'watermark':
        self.map_watermark(value, edits)
      case 'animated':
        edits['animated'] = value.strip().lower() != 'false'
      case _:
        self.log.debug({'message': 'unknown filter ignored', 'filter': name, 'value': value})

  def map_watermark(self, value: str, edits: ImageEdits) -> None:
    args = re.sub(r'\s+', '', value).split(',')
    if len(args) < 2:
      raise invalid_value('watermark', value)
    args += [''] * (7 - len(args))
    bucket, key, x_pos, y_pos, alpha, w_ratio, h_ratio = args[:7]

    options: dict[str, str | int] = {}
    if position_re.fullmatch(x_pos):
      options['left'] = x_pos if x_pos.endswith('p') else int(x_pos)
    if position_re.fullmatch(y_pos):
      options['top'] = y_pos if y_pos.endswith('p') else int(y_pos)

    edits['overlayWith'] = {
        'bucket': bucket,
        'key': key,
        'alpha': alpha,
        'wRatio': w_ratio,
        'hRatio': h_ratio,
        'options': options,
    }
