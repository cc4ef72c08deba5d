import logging
from http import HTTPStatus
from typing import Any, Optional

import pytest

from imghandler.typing import HttpPath

from .errors import ImageHandlerError
from .thumbor import (
    RewriteRule,
    ThumborMapper,
    parse_color,
    parse_custom_path,
    parse_image_key
)


@pytest.fixture
def mapper() -> ThumborMapper:
  return ThumborMapper(logging.getLogger(__name__))


@pytest.mark.parametrize(
    'path,expected', [
        ('/100x100/filters:quality(80)/myimages/cat.jpg', 'myimages/cat.jpg'),
        ('/fit-in/200x300/filters:grayscale()/img.png', 'img.png'),
        ('/10x20:110x220/100x0/a/b%20c.jpg', 'a/b c.jpg'),
        ('/-100x-100/a.jpg', 'a.jpg'),
        ('/filters:format(webp):quality(50)/dir/sub/x.jpeg', 'dir/sub/x.jpeg'),
        ('//a/%E3%83%86%E3%82%B9%E3%83%88.jpg', 'a/テスト.jpg'),
        ('/myimages/cat.jpg', 'myimages/cat.jpg'),
    ],
    ids=['resize', 'fit-in', 'crop', 'flip', 'chained-filters', 'multibyte', 'plain'])
def test_parse_image_key(path: str, expected: str) -> None:
  assert parse_image_key(HttpPath(path)) == expected


@pytest.mark.parametrize(
    'path,expected', [
        (
            '/100x100/filters:quality(80)/myimages/cat.jpg',
            {
                'resize': {
                    'width': 100,
                    'height': 100
                },
                'jpeg': {
                    'quality': 80
                },
            },
        ),
        (
            '/fit-in/200x0/filters:grayscale():format(webp)/a.png',
            {
                'resize': {
                    'width': 200,
                    'height': None,
                    'fit': 'inside'
                },
                'grayscale': True,
                'toFormat': 'webp',
            },
        ),
        (
            '/10x20:110x220/a.jpg',
            {
                'crop': {
                    'left': 10,
                    'top': 20,
                    'width': 100,
                    'height': 200
                },
            },
        ),
        (
            '/-100x-50/a.jpg',
            {
                'resize': {
                    'width': 100,
                    'height': 50
                },
                'flop': True,
                'flip': True,
            },
        ),
        (
            '/filters:quality(70)/a.png',
            {
                'png': {
                    'quality': 70
                }
            },
        ),
        (
            '/filters:quality(70)/a.gif',
            {
                'jpeg': {
                    'quality': 70
                }
            },
        ),
        (
            '/filters:fill(ff0000)/a.jpg',
            {
                'resize': {
                    'fit': 'contain',
                    'background': {
                        'r': 255,
                        'g': 0,
                        'b': 0,
                        'alpha': 1
                    }
                }
            },
        ),
        (
            '/filters:background_color(white)/a.png',
            {
                'flatten': {
                    'background': {
                        'r': 255,
                        'g': 255,
                        'b': 255,
                        'alpha': 1
                    }
                }
            },
        ),
        ('/filters:blur(7)/a.jpg', {
            'blur': 3.5
        }),
        ('/filters:blur(7,2)/a.jpg', {
            'blur': 2.0
        }),
        ('/filters:rotate(90)/a.jpg', {
            'rotate': 90
        }),
        ('/filters:strip_exif()/filters:strip_icc()/a.jpg', {
            'rotate': None
        }),
        ('/filters:equalize()/a.jpg', {
            'normalize': True
        }),
        ('/filters:autojpg()/a.png', {
            'toFormat': 'jpeg'
        }),
        ('/filters:format(jpg)/a.png', {
            'toFormat': 'jpeg'
        }),
        ('/filters:format(avif)/a.png', {}),
        ('/filters:rgb(100,0,-10)/a.jpg', {
            'tint': {
                'r': 255,
                'g': 0,
                'b': 0
            }
        }),
        ('/filters:sharpen(2,4,true)/a.jpg', {
            'sharpen': 3.0
        }),
        (
            '/fit-in/100x100/filters:stretch()/a.jpg',
            {
                'resize': {
                    'width': 100,
                    'height': 100,
                    'fit': 'inside'
                }
            },
        ),
        (
            '/100x100/filters:stretch()/a.jpg',
            {
                'resize': {
                    'width': 100,
                    'height': 100,
                    'fit': 'fill'
                }
            },
        ),
        (
            '/100x100/filters:no_upscale()/a.jpg',
            {
                'resize': {
                    'width': 100,
                    'height': 100,
                    'withoutEnlargement': True
                }
            },
        ),
        (
            '/100x50/filters:proportion(0.5)/a.jpg',
            {
                'resize': {
                    'width': 50,
                    'height': 25,
                    'ratio': 0.5
                }
            },
        ),
        (
            '/filters:convolution(1;2;1;2;4;2;1;2;1,3,true)/a.jpg',
            {
                'convolve': {
                    'width': 3,
                    'height': 3,
                    'kernel': [1.0, 2.0, 1.0, 2.0, 4.0, 2.0, 1.0, 2.0, 1.0]
                }
            },
        ),
        (
            '/filters:watermark(wm-bucket,logo.png,10,20p,50,0.2,0.3)/a.jpg',
            {
                'overlayWith': {
                    'bucket': 'wm-bucket',
                    'key': 'logo.png',
                    'alpha': '50',
                    'wRatio': '0.2',
                    'hRatio': '0.3',
                    'options': {
                        'left': 10,
                        'top': '20p'
                    },
                }
            },
        ),
        ('/filters:animated(false)/a.gif', {
            'animated': False
        }),
        ('/filters:no_such_filter(1)/a.jpg', {}),
        ('/a.jpg', {}),
    ],
    ids=[
        'resize-quality',
        'fit-in-chain',
        'crop',
        'flip-flop',
        'quality-png',
        'quality-unknown-ext',
        'fill',
        'background-color',
        'blur-radius',
        'blur-sigma',
        'rotate',
        'strip',
        'equalize',
        'autojpg',
        'format-alias',
        'format-unsupported',
        'rgb',
        'sharpen',
        'stretch-fit-in',
        'stretch',
        'no-upscale',
        'proportion',
        'convolution',
        'watermark',
        'animated',
        'unknown-filter',
        'no-edits',
    ])
def test_map_path_to_edits(mapper: ThumborMapper, path: str, expected: dict[str, Any]) -> None:
  assert mapper.map_path_to_edits(HttpPath(path)) == expected


def test_map_path_to_edits_keeps_order(mapper: ThumborMapper) -> None:
  edits = mapper.map_path_to_edits(
      HttpPath('/10x10:20x20/100x100/filters:quality(80):grayscale()/a.jpg'))
  assert list(edits.keys()) == ['crop', 'resize', 'jpeg', 'grayscale']


@pytest.mark.parametrize(
    'path,code', [
        ('/110x20:10x220/a.jpg', 'ThumborMapping::InvalidCrop'),
        ('/filters:quality(abc)/a.jpg', 'ThumborMapping::InvalidFilterValue'),
        ('/filters:fill(notacolor)/a.jpg', 'ThumborMapping::InvalidColor'),
        ('/filters:convolution(1;2;1,0)/a.jpg', 'ThumborMapping::InvalidFilterValue'),
        ('/filters:rgb(1,2)/a.jpg', 'ThumborMapping::InvalidFilterValue'),
    ],
    ids=['inverted-crop', 'quality', 'color', 'convolution', 'rgb'])
def test_map_path_to_edits_error(mapper: ThumborMapper, path: str, code: str) -> None:
  with pytest.raises(ImageHandlerError) as e:
    mapper.map_path_to_edits(HttpPath(path))

  assert e.value.status == HTTPStatus.BAD_REQUEST
  assert e.value.code == code


@pytest.mark.parametrize(
    'value,expected', [
        ('#fff', {'r': 255, 'g': 255, 'b': 255, 'alpha': 1}),
        ('00ff00', {'r': 0, 'g': 255, 'b': 0, 'alpha': 1}),
        ('0000ff80', {'r': 0, 'g': 0, 'b': 255, 'alpha': 0.502}),
        ('Navy', {'r': 0, 'g': 0, 'b': 128, 'alpha': 1}),
    ])
def test_parse_color(value: str, expected: dict[str, float]) -> None:
  assert parse_color(value) == expected


@pytest.mark.parametrize(
    'match_pattern,substitution,path,expected', [
        ('thumb-', '', '/thumb-100x100/a.jpg', '/100x100/a.jpg'),
        (r'/^\/(\d+)w\/(.*)$/', '/$1x0/$2', '/300w/a.jpg', '/300x0/a.jpg'),
        ('/A/gi', 'b', '/aXa', '/bXb'),
        ('/a/', 'b', '/aXa', '/bXa'),
        ('/(?<w>\\d+)w/', '$<w>x0', '/300w/a.jpg', '/300x0/a.jpg'),
        ('/x/', '[$&$$]', '/axb', '/a[x$]b'),
        ('/(a)/', '$10', '/ab', '/a0b'),
        ('/(a)/', '$2', '/ab', '/$2b'),
    ],
    ids=[
        'literal',
        'regex',
        'global-ignorecase',
        'first-only',
        'named-group',
        'match-and-dollar',
        'two-digit-fallback',
        'missing-group',
    ])
def test_parse_custom_path(
    match_pattern: str,
    substitution: str,
    path: str,
    expected: str,
) -> None:
  rule = RewriteRule(match_pattern=match_pattern, substitution=substitution)
  assert parse_custom_path(HttpPath(path), rule) == expected


def test_parse_custom_path_invalid_pattern() -> None:
  rule = RewriteRule(match_pattern='/(/', substitution='x')

  with pytest.raises(ImageHandlerError) as e:
    parse_custom_path(HttpPath('/a.jpg'), rule)

  assert e.value.status == HTTPStatus.INTERNAL_SERVER_ERROR
  assert e.value.code == 'RequestType::InvalidRewritePattern'


@pytest.mark.parametrize(
    'match_pattern,substitution,expected', [
        ('a', 'b', True),
        ('', 'b', False),
        ('a', '', False),
        (None, 'b', False),
        ('a', None, False),
    ])
def test_rewrite_rule_is_defined(
    match_pattern: Optional[str],
    substitution: Optional[str],
    expected: bool,
) -> None:
  assert RewriteRule(match_pattern, substitution).is_defined() == expected
