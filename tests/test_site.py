
import logging
import os
import pagetree
import pytest

from conftest import write_tree


@pytest.fixture
def project(tmp_path):
  write_tree(tmp_path, {
    'content/_properties.yml': 'title: Home\n',
    'content/index.md': '# Welcome\n',
    'content/docs/_properties.yml': 'title: Docs\n',
    'content/docs/_layout.yml': 'show_sub_pages: true\nshow_navigation: false\n',
    'content/docs/intro/_properties.yml': 'title: Intro\n',
    'content/docs/intro/text.html': '<p>raw</p>',
    'content/old/_properties.yml': 'title: Old\nredirect_url: /docs/\n',
  })
  return tmp_path


def read(*parts):
  with open(os.path.join(*map(str, parts)), encoding='utf8') as fp:
    return fp.read()


def test_build(project, capsys):
  site = pagetree.Site({}, project_directory=str(project))
  assert site.build() == 4
  assert 'rendering' in capsys.readouterr().out

  home = read(project, 'build', 'index.html')
  assert '<title>Home</title>' in home
  assert '<h1 id="welcome">Welcome</h1>' in home
  assert '<a href="/docs/">Docs</a>' in home

  docs = read(project, 'build', 'docs', 'index.html')
  assert '<nav>' not in docs
  assert '<li><a href="/docs/intro/">Intro</a></li>' in docs

  assert '<p>raw</p>' in read(project, 'build', 'docs', 'intro', 'index.html')
  assert 'url=/docs/' in read(project, 'build', 'old', 'index.html')


def test_build_logs_each_file(project, caplog):
  with caplog.at_level(logging.INFO, logger='pagetree'):
    pagetree.Site({}, project_directory=str(project)).build()
  messages = [x.getMessage() for x in caplog.records if x.name == 'pagetree']
  rendered = [x for x in messages if x.startswith('rendering ')]
  assert len(rendered) == 4
  assert any(x.endswith('(/docs/intro/)') for x in rendered)
  assert 'rendered 4 pages' in messages


def test_navigation_uses_resolved_url(project):
  pagetree.Site({}, project_directory=str(project)).build()
  assert '<a href="/docs/">Old</a>' in read(project, 'build', 'index.html')


def test_project_layout_template(project):
  write_tree(project, {
    'templates/page.html': '<main>{{ content }}</main>{{ page.extra.get_str("tag", "-") }}',
  })
  pagetree.Site({}, project_directory=str(project)).build()
  assert read(project, 'build', 'docs', 'intro', 'index.html') == '<main><p>raw</p></main>-'


def test_build_without_root_page(tmp_path):
  write_tree(tmp_path, {'content': None})
  with pytest.raises(pagetree.PageNotFoundError):
    pagetree.Site({}, project_directory=str(tmp_path)).build()


def test_url_to_filename(tmp_path):
  site = pagetree.Site({'pagetree': {'buildDirectory': 'out'}}, project_directory=str(tmp_path))
  assert site.url_to_filename('/') == os.path.join(str(tmp_path), 'out', 'index.html')
  assert site.url_to_filename('/a/b/') == os.path.join(str(tmp_path), 'out', 'a', 'b', 'index.html')


def test_main(project, monkeypatch):
  monkeypatch.chdir(project)
  write_tree(project, {'.pagetree.toml': '[pagetree]\nbuildDirectory = "public"\n'})
  assert pagetree.main([]) == 0
  assert os.path.isfile(os.path.join(str(project), 'public', 'index.html'))
  assert pagetree.main(['-b', 'other']) == 0
  assert os.path.isfile(os.path.join(str(project), 'other', 'docs', 'index.html'))


def test_main_reports_errors(tmp_path, monkeypatch, capsys):
  monkeypatch.chdir(tmp_path)
  write_tree(tmp_path, {'site/_properties.yml': 'title: [broken\n'})
  assert pagetree.main(['-C', 'site']) == 1
  assert 'error:' in capsys.readouterr().err
