
import os
import pagetree
import pytest


class CountingFileSystem(pagetree.LocalFileSystem):
  """
  Counts the directory scans and document reads.
  """

  def __init__(self, root):
    super(CountingFileSystem, self).__init__(root)
    self.scans = 0
    self.reads = []

  def list_directories(self, path):
    self.scans += 1
    return super(CountingFileSystem, self).list_directories(path)

  def list_files(self, path):
    self.scans += 1
    return super(CountingFileSystem, self).list_files(path)

  def read_text(self, path):
    self.reads.append(path)
    return super(CountingFileSystem, self).read_text(path)


def write_tree(root, files):
  """
  Creates the *files* (a dictionary of relative filename to content) below
  *root*. A value of #None creates an empty directory.
  """

  for name, content in files.items():
    filename = os.path.join(str(root), *name.split('/'))
    if content is None:
      os.makedirs(filename, exist_ok=True)
      continue
    os.makedirs(os.path.dirname(filename), exist_ok=True)
    with open(filename, 'w', encoding='utf8') as fp:
      fp.write(content)


@pytest.fixture
def content(tmp_path):
  root = tmp_path / 'content'
  root.mkdir()
  def make(files):
    write_tree(root, files)
    return root
  make.root = root
  return make


@pytest.fixture
def fs(content):
  return CountingFileSystem(str(content.root))


@pytest.fixture
def loader(fs):
  return pagetree.PageLoader(fs)
