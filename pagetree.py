# The MIT License (MIT)
#
# Copyright (c) 2018 Niklas Rosenstein
#
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to
# deal in the Software without restriction, including without limitation the
# rights to use, copy, modify, merge, publish, distribute, sublicense, and/or
# sell copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
#
# The above copyright notice and this permission notice shall be included in
# all copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING
# FROM, OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS
# IN THE SOFTWARE.
"""
Pagetree turns a directory hierarchy into an ordered tree of pages. A
directory is a page if it contains a properties document; its sub pages and
content files are ordered by that document and by directory conventions.
"""

__version__ = '1.0.0'
__author__ = 'Niklas Rosenstein <rosensteinniklas@gmail.com>'

from collections import ChainMap, Counter, namedtuple
from collections.abc import Mapping
from pygments import highlight
from pygments.formatters import HtmlFormatter
from pygments.lexers import get_lexer_by_name
from pygments.util import ClassNotFound
from urllib.parse import urlparse

import abc
import html
import io
import jinja2
import logging
import misaka
import os
import posixpath
import re
import sys
import threading
import toml
import yaml

logger = logging.getLogger(__name__)

#: The #Page.path of a page that was not loaded from a page directory.
NO_PATH = 'N/A'

##
# Exceptions
##

class PageTreeError(Exception):
  pass


class DocumentError(PageTreeError, ValueError):
  """
  Raised when a page document can not be parsed or does not match the
  expected schema.
  """

  def __init__(self, filename, message):
    super(DocumentError, self).__init__('{}: {}'.format(filename, message))
    self.filename = filename
    self.message = message


class ExtraTypeError(PageTreeError, TypeError):
  """
  Raised by the typed lookups of #PageExtra when the value has the wrong type.
  """

  def __init__(self, key, expected, value):
    super(ExtraTypeError, self).__init__('{!r}: expected {}, got {}'.format(
      key, expected, type(value).__name__))
    self.key = key
    self.expected = expected
    self.value = value


class PageNotFoundError(PageTreeError, LookupError):
  pass


##
# Paths and URLs
##

def normalize_path(path):
  """
  Normalizes an app path. App paths are posix paths relative to the content
  root and always start with a slash.
  """

  path = posixpath.normpath('/' + path.replace('\\', '/').lstrip('/'))
  # normpath() preserves two leading slashes.
  return '/' + path.lstrip('/')


def join_path(path, name):
  return normalize_path(posixpath.join(path, name))


def url_to_path(url):
  return normalize_path(urlparse(url).path or '/')


def path_to_url(path):
  url = normalize_path(path)
  if not url.endswith('/'):
    url += '/'
  return url


##
# Abstract Interfaces
##

class FileSystem(abc.ABC):
  """
  Access to the files of the content tree by app path. Directory listings
  must be sorted by name.
  """

  @abc.abstractmethod
  def isdir(self, path):
    pass

  @abc.abstractmethod
  def isfile(self, path):
    pass

  @abc.abstractmethod
  def read_text(self, path):
    """
    Read the file at *path*. Raises an #OSError if the file can not be read.
    """

  @abc.abstractmethod
  def list_directories(self, path):
    """
    Return the app paths of all directories in *path*, sorted by name.
    """

  @abc.abstractmethod
  def list_files(self, path):
    """
    Return the app paths of all files in *path*, sorted by name.
    """


class DocumentLoader(abc.ABC):

  @abc.abstractmethod
  def load(self, text, filename):
    """
    Deserialize *text* and return the resulting object (usually a dictionary
    or #None for an empty document). Raises a #DocumentError if the text is
    malformed.
    """


class MarkdownConverter(abc.ABC):

  @abc.abstractmethod
  def convert(self, text):
    """
    Convert Markdown *text* to HTML.
    """


class TemplateRenderer(abc.ABC):

  @abc.abstractmethod
  def render_partial(self, path, output, vars):
    """
    Render the template at the app path *path* and write the result to
    the *output* stream.
    """

  @abc.abstractmethod
  def render_template(self, name, vars):
    """
    Render the template *name* from the template search path to a string.
    """


##
# Concrete Implementations
##

class LocalFileSystem(FileSystem):

  def __init__(self, root, encoding='utf8'):
    self.root = os.path.abspath(root)
    self.encoding = encoding

  def __repr__(self):
    return 'LocalFileSystem({!r})'.format(self.root)

  def real_path(self, path):
    parts = [x for x in normalize_path(path).split('/') if x]
    return os.path.join(self.root, *parts)

  def isdir(self, path):
    return os.path.isdir(self.real_path(path))

  def isfile(self, path):
    return os.path.isfile(self.real_path(path))

  def read_text(self, path):
    with io.open(self.real_path(path), encoding=self.encoding) as fp:
      return fp.read()

  def _list(self, path, predicate):
    directory = self.real_path(path)
    names = sorted(os.listdir(directory))
    return [join_path(path, x) for x in names
            if predicate(os.path.join(directory, x))]

  def list_directories(self, path):
    return self._list(path, os.path.isdir)

  def list_files(self, path):
    return self._list(path, os.path.isfile)


class YamlDocumentLoader(DocumentLoader):

  def load(self, text, filename):
    try:
      return yaml.safe_load(text)
    except yaml.YAMLError as exc:
      raise DocumentError(filename, str(exc)) from exc


class TomlDocumentLoader(DocumentLoader):

  def load(self, text, filename):
    try:
      return toml.loads(text)
    except toml.TomlDecodeError as exc:
      raise DocumentError(filename, str(exc)) from exc


class MisakaHtmlRenderer(misaka.HtmlRenderer):
  """
  Highlights fenced code blocks with Pygments and gives every heading an
  `id` generated from its text. Use one instance per document, the ids are
  only unique within the document.
  """

  def __init__(self, flags=0, nesting_level=0):
    super(MisakaHtmlRenderer, self).__init__(flags, nesting_level)
    self.anchors = Counter()

  def make_anchor(self, content):
    text = html.unescape(re.sub(r'<[^>]+>', '', content)).lower()
    anchor = re.sub(r'[\s_-]+', '-', re.sub(r'[^\w\s-]', '', text)).strip('-')
    anchor = anchor or 'section'
    count = self.anchors[anchor]
    self.anchors[anchor] += 1
    if count:
      anchor = '{}-{}'.format(anchor, count)
    return anchor

  def header(self, content, level):
    return '\n<h{0} id="{1}">{2}</h{0}>\n'.format(level, self.make_anchor(content), content)

  def blockcode(self, text, lang):
    try:
      lexer = get_lexer_by_name(lang, stripall=True) if lang else None
    except ClassNotFound:
      lexer = None
    if lexer:
      return highlight(text, lexer, HtmlFormatter())
    return '\n<pre><code>{}</code></pre>\n'.format(misaka.escape_html(text.strip()))


class MisakaMarkdownConverter(MarkdownConverter):

  DEFAULT_EXTENSIONS = (
    'tables', 'fenced-code', 'footnotes', 'autolink', 'strikethrough',
    'underline', 'highlight', 'quote', 'superscript', 'math')

  def __init__(self, extensions=None):
    self.extensions = list(self.DEFAULT_EXTENSIONS if extensions is None else extensions)

  def convert(self, text):
    renderer = MisakaHtmlRenderer()
    return misaka.Markdown(renderer, extensions=self.extensions)(text)


class FileSystemTemplateLoader(jinja2.BaseLoader):
  """
  Loads Jinja templates from a #FileSystem. Template names are app paths
  without the leading slash.
  """

  def __init__(self, fs):
    self.fs = fs

  def get_source(self, environment, template):
    path = normalize_path(template)
    if not self.fs.isfile(path):
      raise jinja2.TemplateNotFound(template)
    return self.fs.read_text(path), path, None


DEFAULT_PAGE_TEMPLATE = '''\
<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>{{ page.properties.title }}</title>
  {%- for href in page.layout.stylesheets %}
  <link rel="stylesheet" href="{{ href }}">
  {%- endfor %}
</head>
<body>
  {%- if page.layout.show_navigation %}
  <nav>
    <a href="{{ root.resolved_url }}">{{ root.properties.title }}</a>
    {%- for sub_page in root.get_sub_pages() %}
    <a href="{{ sub_page.resolved_url }}">{{ sub_page.properties.title }}</a>
    {%- endfor %}
  </nav>
  {%- endif %}
  <main>
{{ content }}
  </main>
  {%- if page.layout.show_sub_pages %}
  <ul>
    {%- for sub_page in page.get_sub_pages() %}
    <li><a href="{{ sub_page.resolved_url }}">{{ sub_page.properties.title }}</a></li>
    {%- endfor %}
  </ul>
  {%- endif %}
</body>
</html>
'''

DEFAULT_REDIRECT_TEMPLATE = '''\
<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <meta http-equiv="refresh" content="0; url={{ page.resolved_url }}">
  <link rel="canonical" href="{{ page.resolved_url }}">
</head>
<body><a href="{{ page.resolved_url }}">{{ page.resolved_url }}</a></body>
</html>
'''


class JinjaTemplateRenderer(TemplateRenderer):
  """
  Renders partials from the content tree and layout templates from the
  *search_path* directories. The built-in `page.html` and `redirect.html`
  templates are used when no other template by that name exists.
  """

  def __init__(self, fs, search_path=()):
    loader = jinja2.ChoiceLoader([
      FileSystemTemplateLoader(fs),
      jinja2.FileSystemLoader(list(search_path)),
      jinja2.DictLoader({
        'page.html': DEFAULT_PAGE_TEMPLATE,
        'redirect.html': DEFAULT_REDIRECT_TEMPLATE})
    ])
    self.env = jinja2.Environment(loader=loader)

  def render_partial(self, path, output, vars):
    template = self.env.get_template(normalize_path(path).lstrip('/'))
    output.write(template.render(vars))

  def render_template(self, name, vars):
    return self.env.get_template(name).render(vars)


##
# Configuration
##

class Config(object):
  """
  Wraps a dictionary that may contain nested values. Values in nested
  dictionaries can be addressed by separating keys with dots.
  """

  def __init__(self, data=None):
    self._data = {} if data is None else data

  def __repr__(self):
    return 'Config({!r})'.format(self._data)

  def _resolve(self, key, create_intermediate=False):
    """
    Returns the container that holds the last part of *key* and the last
    part itself. The container is #None if it does not exist.
    """

    container = self._data
    parts = key.split('.')
    for part in parts[:-1]:
      if part not in container and create_intermediate:
        container[part] = {}
      container = container.get(part)
      if not isinstance(container, dict):
        return None, parts[-1]
    return container, parts[-1]

  def __getitem__(self, key):
    container, last = self._resolve(key)
    if container is None or last not in container:
      raise KeyError(key)
    return container[last]

  def __setitem__(self, key, value):
    container, last = self._resolve(key, True)
    if container is None:
      raise KeyError(key)
    container[last] = value

  def __delitem__(self, key):
    container, last = self._resolve(key)
    if container is None:
      raise KeyError(key)
    del container[last]

  def __contains__(self, key):
    container, last = self._resolve(key)
    return container is not None and last in container

  def get(self, key, default=None):
    try:
      return self[key]
    except KeyError:
      return default

  def setdefault(self, key, value):
    if key not in self:
      self[key] = value
    return self[key]


class Settings(namedtuple('Settings', [
    'properties_filename', 'layout_filename', 'extra_filename', 'ellipsis',
    'ignore_prefix', 'partial_suffixes', 'markdown_suffixes',
    'content_encoding'])):
  """
  The conventions used to read a content tree.
  """

  DEFAULTS = {
    'propertiesFileName': '_properties.yml',
    'layoutFileName': '_layout.yml',
    'extraFileName': '_extra.yml',
    'subPageOrderEllipsis': '...',
    'ignoreContentPrefix': '_',
    'partialSuffixes': ['.j2', '.jinja', '.jinja2'],
    'markdownSuffixes': ['.md', '.markdown'],
    'contentEncoding': 'utf8',
  }

  @classmethod
  def from_config(cls, config):
    if not isinstance(config, Config):
      config = Config(config)
    get = lambda k: config.get('pagetree.' + k, cls.DEFAULTS[k])
    return cls(
      properties_filename = get('propertiesFileName'),
      layout_filename = get('layoutFileName'),
      extra_filename = get('extraFileName'),
      ellipsis = get('subPageOrderEllipsis'),
      ignore_prefix = get('ignoreContentPrefix'),
      partial_suffixes = tuple(get('partialSuffixes')),
      markdown_suffixes = tuple(get('markdownSuffixes')),
      content_encoding = get('contentEncoding'))


##
# Page documents
##

#: Maps a document file suffix to the #DocumentLoader for it.
DOCUMENT_LOADERS = {
  '.yml': YamlDocumentLoader(),
  '.yaml': YamlDocumentLoader(),
  '.toml': TomlDocumentLoader(),
}


def load_document(fs, path, document_loaders=None):
  """
  Reads the document at *path* and deserializes it with the loader for
  its file suffix.
  """

  suffix = posixpath.splitext(path)[1].lower()
  try:
    document_loader = (document_loaders or DOCUMENT_LOADERS)[suffix]
  except KeyError:
    raise DocumentError(path, 'unsupported document type {!r}'.format(suffix)) from None
  return document_loader.load(fs.read_text(path), path)


def _string(filename, key, value):
  if isinstance(value, (dict, list)):
    raise DocumentError(filename, '{!r} must be a string'.format(key))
  return '' if value is None else str(value)


def _string_list(filename, key, value):
  if value is None:
    return ()
  if not isinstance(value, list):
    raise DocumentError(filename, '{!r} must be a list'.format(key))
  return tuple(_string(filename, key, x) for x in value)


def _mapping(filename, data):
  if data is None:
    return {}
  if not isinstance(data, dict):
    raise DocumentError(filename, 'expected a mapping, got {}'.format(type(data).__name__))
  return data


def _pick(data, *keys):
  for key in keys:
    if key in data:
      return data[key]
  return None


class PageProperties(namedtuple('PageProperties', [
    'title', 'redirect_url', 'sub_page_order', 'content_order'])):
  """
  The contents of a page's properties document. Unknown fields are ignored.
  """

  __slots__ = ()

  def __new__(cls, title='', redirect_url='', sub_page_order=(), content_order=()):
    return super(PageProperties, cls).__new__(
      cls, title, redirect_url, tuple(sub_page_order), tuple(content_order))

  @classmethod
  def from_dict(cls, data, filename='<properties>'):
    data = _mapping(filename, data)
    return cls(
      title = _string(filename, 'title', data.get('title')),
      redirect_url = _string(filename, 'redirect_url', _pick(data, 'redirect_url', 'redirectUrl')),
      sub_page_order = _string_list(filename, 'sub_page_order', _pick(data, 'sub_page_order', 'subPageOrder')),
      content_order = _string_list(filename, 'content_order', _pick(data, 'content_order', 'contentOrder')))


class PageLayout(namedtuple('PageLayout', [
    'template', 'show_navigation', 'show_sub_pages', 'stylesheets'])):
  """
  Layout options of a page. Pages without a layout document share
  #PageLayout.DEFAULT.
  """

  __slots__ = ()

  DEFAULT = None

  def __new__(cls, template='page.html', show_navigation=True,
              show_sub_pages=False, stylesheets=()):
    return super(PageLayout, cls).__new__(
      cls, template, show_navigation, show_sub_pages, tuple(stylesheets))

  @classmethod
  def from_dict(cls, data, filename='<layout>'):
    data = _mapping(filename, data)
    if not data:
      return cls.DEFAULT
    for key in ('show_navigation', 'show_sub_pages'):
      if key in data and not isinstance(data[key], bool):
        raise DocumentError(filename, '{!r} must be a boolean'.format(key))
    return cls(
      template = _string(filename, 'template', data.get('template', 'page.html')),
      show_navigation = data.get('show_navigation', True),
      show_sub_pages = data.get('show_sub_pages', False),
      stylesheets = _string_list(filename, 'stylesheets', data.get('stylesheets')))


PageLayout.DEFAULT = PageLayout()


class PageExtra(Mapping):
  """
  Free-form values of a page's extra document. The typed getters return
  *default* for missing keys and raise an #ExtraTypeError if the value
  has a different type.
  """

  def __init__(self, data=None):
    self._data = dict(data or {})

  def __repr__(self):
    return 'PageExtra({!r})'.format(self._data)

  def __getitem__(self, key):
    return self._data[key]

  def __iter__(self):
    return iter(self._data)

  def __len__(self):
    return len(self._data)

  def _typed(self, key, types, expected, default):
    if key not in self._data:
      return default
    value = self._data[key]
    # bool is a subclass of int, but not a number here.
    if not isinstance(value, types) or (isinstance(value, bool) and bool not in types):
      raise ExtraTypeError(key, expected, value)
    return value

  def get_str(self, key, default=None):
    return self._typed(key, (str,), 'str', default)

  def get_int(self, key, default=None):
    return self._typed(key, (int,), 'int', default)

  def get_float(self, key, default=None):
    value = self._typed(key, (int, float), 'float', default)
    return float(value) if value is not None else None

  def get_bool(self, key, default=None):
    return self._typed(key, (bool,), 'bool', default)

  def get_list(self, key, default=None):
    return self._typed(key, (list,), 'list', default)

  def get_mapping(self, key, default=None):
    return self._typed(key, (dict,), 'mapping', default)


##
# Ordering
##

def is_page_directory(fs, path, properties_filename):
  return fs.isfile(join_path(path, properties_filename))


def is_ancestor_path(path, other):
  """
  Returns #True if *path* is *other* or one of its parent directories.
  """

  return path == other or other.startswith(path.rstrip('/') + '/')


def resolve_sub_page_paths(fs, page_path, sub_page_order, properties_filename, ellipsis):
  """
  Returns the app paths of the sub pages of *page_path*. Pages listed in
  *sub_page_order* come first, pages listed after the *ellipsis* token
  come last, and all other page directories are inserted in between in
  name order. Tokens that resolve to *page_path* itself or one of its
  parents are skipped.
  """

  page_path = normalize_path(page_path)
  head = []
  tail = []
  seen = set()
  current = head

  for token in sub_page_order:
    if token == ellipsis:
      current = tail
      continue
    path = join_path(page_path, token)
    if path in seen or is_ancestor_path(path, page_path):
      continue
    if fs.isdir(path) and is_page_directory(fs, path, properties_filename):
      current.append(path)
      seen.add(path)

  for path in fs.list_directories(page_path):
    if path not in seen and is_page_directory(fs, path, properties_filename):
      head.append(path)

  return head + tail


def resolve_content_file_paths(fs, page_path, content_order, ignore_prefix):
  """
  Returns the app paths of the content files of *page_path*. Files listed
  in *content_order* come first, followed by all other files in name order
  whose name does not start with *ignore_prefix*.
  """

  result = []
  seen = set()

  for token in content_order:
    path = join_path(page_path, token)
    if path not in seen and fs.isfile(path):
      result.append(path)
      seen.add(path)

  for path in fs.list_files(page_path):
    name = posixpath.basename(path)
    if path not in seen and not name.startswith(ignore_prefix):
      result.append(path)

  return result


##
# Page tree
##

class Page(object):
  """
  A page of the content tree. The configuration of a page never changes
  after it was loaded, the sub pages and content files are computed once
  on first access.
  """

  def __init__(self, loader, properties, layout, extra, url='/', path=NO_PATH, scope=None):
    self._loader = loader
    self._properties = properties
    self._layout = layout
    self._extra = extra
    self._url = url
    self._path = path
    self.scope = scope
    self._lock = threading.RLock()
    self._sub_pages = None
    self._content_files = None

  def __repr__(self):
    return 'Page(title={!r}, url={!r})'.format(self.properties.title, self.resolved_url)

  __str__ = __repr__

  properties = property(lambda self: self._properties)
  layout = property(lambda self: self._layout)
  extra = property(lambda self: self._extra)
  url = property(lambda self: self._url)
  path = property(lambda self: self._path)

  @property
  def is_page(self):
    return self._path != NO_PATH

  @property
  def resolved_url(self):
    return self.properties.redirect_url or self.url

  @property
  def content_files(self):
    with self._lock:
      if self._content_files is None:
        if self.is_page:
          settings = self._loader.settings
          self._content_files = tuple(resolve_content_file_paths(
            self._loader.fs, self.path, self.properties.content_order,
            settings.ignore_prefix))
        else:
          self._content_files = ()
      return self._content_files

  def sub_page_paths(self):
    if not self.is_page:
      return []
    settings = self._loader.settings
    return resolve_sub_page_paths(
      self._loader.fs, self.path, self.properties.sub_page_order,
      settings.properties_filename, settings.ellipsis)

  def _load_sub_page(self, path):
    if self.scope is not None:
      return self.scope.get_page(path)
    return self._loader.load_from_path(path)

  def get_sub_pages(self, executor=None):
    """
    Returns the sub pages in order. If an *executor* is specified, the sub
    pages are loaded in parallel.
    """

    with self._lock:
      if self._sub_pages is None:
        paths = self.sub_page_paths()
        if executor is not None:
          pages = executor.map(self._load_sub_page, paths)
        else:
          pages = map(self._load_sub_page, paths)
        self._sub_pages = tuple(pages)
      return self._sub_pages

  def walk(self, executor=None):
    """
    Yields this page and all of its descendants, depth first. A page that
    is reachable through more than one parent is only yielded once.
    """

    seen = set()
    def recursion(page):
      if page.path in seen:
        return
      seen.add(page.path)
      yield page
      for sub_page in page.get_sub_pages(executor):
        yield from recursion(sub_page)
    return recursion(self)


class PageLoader(object):
  """
  Loads #Page objects from the page directories of a #FileSystem.
  """

  def __init__(self, fs, settings=None, document_loaders=None):
    self.fs = fs
    self.settings = settings or Settings.from_config({})
    self.document_loaders = document_loaders or DOCUMENT_LOADERS

  def is_page(self, path):
    return is_page_directory(self.fs, path, self.settings.properties_filename)

  def load_from_path(self, path, scope=None, strict=False):
    """
    Loads the page in the directory *path*. If the directory is not a page
    directory, a page with default properties is returned, or a
    #PageNotFoundError is raised if *strict* is enabled.
    """

    path = normalize_path(path)
    if not self.is_page(path):
      if strict:
        raise PageNotFoundError(path)
      logger.debug('not a page directory: %s', path)
      return Page(self, PageProperties(), PageLayout.DEFAULT, PageExtra(), path_to_url(path))

    logger.debug('loading page %s', path)
    properties_filename = join_path(path, self.settings.properties_filename)
    layout_filename = join_path(path, self.settings.layout_filename)
    extra_filename = join_path(path, self.settings.extra_filename)

    load = lambda filename: load_document(self.fs, filename, self.document_loaders)
    properties = PageProperties.from_dict(load(properties_filename), properties_filename)

    layout = PageLayout.DEFAULT
    if self.fs.isfile(layout_filename):
      layout = PageLayout.from_dict(load(layout_filename), layout_filename)

    extra = PageExtra()
    if self.fs.isfile(extra_filename):
      extra = PageExtra(_mapping(extra_filename, load(extra_filename)))

    return Page(self, properties, layout, extra, path_to_url(path), path, scope)

  def load_from_url(self, url, scope=None, strict=False):
    return self.load_from_path(url_to_path(url), scope, strict)

  def new_scope(self):
    return RequestScope(self)


class RequestScope(object):
  """
  Caches the pages loaded during one traversal of the page tree. Every path
  is loaded at most once, also when it is requested from multiple threads.
  """

  def __init__(self, loader):
    self.loader = loader
    self._pages = {}
    self._locks = {}
    self._lock = threading.Lock()

  def __repr__(self):
    return 'RequestScope({} pages)'.format(len(self._pages))

  def __contains__(self, path):
    return normalize_path(path) in self._pages

  def __len__(self):
    return len(self._pages)

  def get_page(self, path):
    path = normalize_path(path)
    page = self._pages.get(path)
    if page is not None:
      return page
    with self._lock:
      key_lock = self._locks.setdefault(path, threading.Lock())
    with key_lock:
      page = self._pages.get(path)
      if page is None:
        # A failed load leaves no entry behind.
        page = self.loader.load_from_path(path, scope=self)
        self._pages[path] = page
      else:
        logger.debug('page %s was loaded concurrently', path)
    return page

  def get_page_by_url(self, url):
    return self.get_page(url_to_path(url))


##
# Rendering
##

class ContentRenderer(object):
  """
  Writes the content files of a page to an output stream. Partial templates
  are rendered by the #TemplateRenderer, Markdown files are converted to
  HTML and all other files are written as they are.
  """

  PARTIAL = 'partial'
  MARKDOWN = 'markdown'
  RAW = 'raw'

  def __init__(self, fs, markdown=None, templates=None, settings=None):
    self.fs = fs
    self.markdown = markdown or MisakaMarkdownConverter()
    self.templates = templates or JinjaTemplateRenderer(fs)
    self.settings = settings or Settings.from_config({})

  def kind_of(self, path):
    if path.endswith(self.settings.partial_suffixes):
      return self.PARTIAL
    if path.endswith(self.settings.markdown_suffixes):
      return self.MARKDOWN
    return self.RAW

  def render(self, page, output, vars=None):
    vars = ChainMap(vars or {}, {'page': page})
    for path in page.content_files:
      kind = self.kind_of(path)
      if kind == self.PARTIAL:
        self.templates.render_partial(path, output, vars)
        continue
      content = self.fs.read_text(path)
      if kind == self.MARKDOWN:
        output.write(self.markdown.convert(content))
      else:
        output.write(content)

  def render_to_string(self, page, vars=None):
    output = io.StringIO()
    self.render(page, output, vars)
    return output.getvalue()


##
# Static site generation
##

class Site(object):
  """
  Renders every page reachable from the root page of the content directory
  into the build directory.
  """

  def __init__(self, config, project_directory='.'):
    if not isinstance(config, Config):
      config = Config(config)
    self.config = config
    self.project_directory = project_directory
    self.globals = {}

    self.config.setdefault('pagetree.contentDirectory', 'content')
    self.config.setdefault('pagetree.buildDirectory', 'build')
    self.config.setdefault('pagetree.siteEncoding', 'utf8')

    self.settings = Settings.from_config(self.config)
    content_dir = os.path.join(project_directory, self.config['pagetree.contentDirectory'])
    self.fs = LocalFileSystem(content_dir, self.settings.content_encoding)
    self.loader = PageLoader(self.fs, self.settings)

  def url_to_filename(self, url):
    parts = [x for x in url_to_path(url).split('/') if x]
    build_dir = os.path.join(self.project_directory, self.config['pagetree.buildDirectory'])
    return os.path.join(build_dir, *(parts + ['index.html']))

  def build(self, executor=None):
    """
    Renders all pages and returns the number of pages written.
    """

    templates = JinjaTemplateRenderer(self.fs, [os.path.join(self.project_directory, 'templates')])
    renderer = ContentRenderer(self.fs, MisakaMarkdownConverter(), templates, self.settings)
    scope = self.loader.new_scope()
    root = scope.get_page('/')
    if not root.is_page:
      raise PageNotFoundError('no {} in the content directory {!r}'.format(
        self.settings.properties_filename, self.fs.root))

    count = 0
    for page in root.walk(executor):
      self.render_page(page, root, templates, renderer)
      count += 1
    logger.info('rendered %d pages', count)
    return count

  def render_page(self, page, root, templates, renderer):
    filename = self.url_to_filename(page.url)
    print('rendering {} ({})'.format(filename, page.url))
    logger.info('rendering %s (%s)', filename, page.url)

    vars = ChainMap({'page': page, 'root': root, 'config': self.config}, self.globals)
    if page.properties.redirect_url:
      result = templates.render_template('redirect.html', vars)
    else:
      vars = vars.new_child({'content': renderer.render_to_string(page, vars)})
      result = templates.render_template(page.layout.template, vars)

    os.makedirs(os.path.dirname(filename), exist_ok=True)
    with io.open(filename, 'w', encoding=self.config['pagetree.siteEncoding']) as fp:
      fp.write(result)


##
# Main
##

def get_argument_parser(prog=None):
  import argparse
  parser = argparse.ArgumentParser(prog=prog)
  parser.add_argument('--version', action='version', version=__version__, help='Display the version and exit.')
  parser.add_argument('-c', '--config', help='Alternative configuration file.')
  parser.add_argument('-C', '--content-directory', help='Override content directory.')
  parser.add_argument('-b', '--build-directory', help='Override build directory.')
  parser.add_argument('-v', '--verbose', action='store_true', help='Enable debug logging.')
  parser.add_argument('-o', '--open', action='store_true', help='Open the index page after the build completed.')
  parser.add_argument('-w', '--watch', action='store_true', help='Watch for changes and rebuild as soon as they are registered.')
  return parser


def load_config(filename=None):
  if not filename and os.path.isfile('.pagetree.toml'):
    filename = '.pagetree.toml'
  if not filename:
    return Config()
  with open(filename) as fp:
    return Config(toml.load(fp))


def main(argv=None, prog=None):
  parser = get_argument_parser(prog)
  args = parser.parse_args(argv)

  logging.basicConfig(
    level=logging.DEBUG if args.verbose else logging.WARNING,
    format='%(levelname)s %(name)s: %(message)s')

  config = load_config(args.config)
  if args.content_directory:
    config['pagetree.contentDirectory'] = args.content_directory
  if args.build_directory:
    config['pagetree.buildDirectory'] = args.build_directory

  site = Site(config)
  try:
    site.build()
  except (PageTreeError, jinja2.TemplateError) as exc:
    print('error: {}'.format(exc), file=sys.stderr)
    return 1

  if args.open:
    import webbrowser
    webbrowser.open(site.url_to_filename('/'))

  if args.watch:
    import time
    import watchdog.events, watchdog.observers
    changed = threading.Event()
    class Handler(watchdog.events.FileSystemEventHandler):
      def on_any_event(self, event):
        changed.set()
    observer = watchdog.observers.Observer()
    observer.schedule(Handler(), path=site.fs.root, recursive=True)
    templates_dir = os.path.join(site.project_directory, 'templates')
    if os.path.isdir(templates_dir):
      observer.schedule(Handler(), path=templates_dir, recursive=True)
    observer.start()
    try:
      while True:
        if changed.is_set():
          changed.clear()
          print()
          print('File changed, rebuilding ...')
          print()
          try:
            site.build()
          except (PageTreeError, jinja2.TemplateError) as exc:
            print('error: {}'.format(exc), file=sys.stderr)
        time.sleep(0.1)
    finally:
      observer.stop()
      observer.join()

  return 0

_entry_point = lambda: sys.exit(main())


if __name__ == '__main__':
  _entry_point()
