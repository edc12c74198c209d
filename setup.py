import re
import os.path

from setuptools import setup, find_packages


with open(
    os.path.join(os.path.dirname(__file__), 'batchloader', '__init__.py')
) as f:
    VERSION = re.match(r".*__version__ = '(.*?)'", f.read(), re.S).group(1)

with open(
    os.path.join(os.path.dirname(__file__), 'README.rst')
) as f:
    DESCRIPTION = f.read()

setup(
    name='batchloader',
    version=VERSION,
    description='Batching and caching loader for concurrent key lookups',
    long_description=DESCRIPTION,
    long_description_content_type='text/x-rst',
    packages=find_packages(exclude=['test*']),
    include_package_data=True,
    license='BSD-3-Clause',
    python_requires='>=3.8',
    install_requires=['prometheus_client'],
    extras_require={
        'test': ['pytest', 'pytest-asyncio', 'faker'],
    },
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: Developers',
        'License :: OSI Approved :: BSD License',
        'Operating System :: OS Independent',
        'Programming Language :: Python',
        'Programming Language :: Python :: 3 :: Only',
        'Topic :: Software Development :: Libraries :: Python Modules',
    ],
)
