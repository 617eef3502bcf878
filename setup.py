
import setuptools

with open('requirements.txt') as fp:
  requirements = fp.readlines()

setuptools.setup(
  name = 'pagetree',
  version = '1.0.0',
  author = 'Niklas Rosenstein',
  author_email = 'rosensteinniklas@gmail.com',
  license = 'MIT',
  description = 'Pagetree builds an ordered page tree from a directory hierarchy.',
  url = 'https://github.com/NiklasRosenstein/pagetree',
  py_modules = ['pagetree'],
  python_requires = '>=3.7',
  install_requires = requirements,
  extras_require = dict(
    test = ['pytest']
  ),
  entry_points = dict(
    console_scripts = [
      'pagetree = pagetree:_entry_point'
    ]
  )
)
