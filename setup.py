import os
import re
import codecs
from setuptools import setup, find_packages

HERE = os.path.abspath(os.path.dirname(__file__))


def read(*parts):
    with codecs.open(os.path.join(HERE, *parts), 'rb', 'utf-8') as f:
        return f.read()


def find_version(*parts):
    match = re.search(
        r"^__version__ = ['\"]([^'\"]*)['\"]", read(*parts), re.M)
    if match is None:
        raise RuntimeError('Unable to find version string.')
    return match.group(1)


setup(
    version=find_version('src', 'txproxyctl', '__init__.py'),
    name='txproxyctl',
    description=(
        'Certificate and configuration control plane for a TLS-terminating '
        'reverse proxy, built on Twisted'),
    license='Expat',
    long_description=read('README.rst'),
    packages=find_packages(where='src'),
    package_dir={'': 'src'},
    zip_safe=True,
    python_requires='>=3.8',
    classifiers=[
        'Development Status :: 3 - Alpha',
        'Framework :: Twisted',
        'Intended Audience :: Developers',
        'Intended Audience :: System Administrators',
        'Natural Language :: English',
        'License :: OSI Approved :: MIT License',
        'Operating System :: OS Independent',
        'Programming Language :: Python',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: Implementation :: CPython',
        'Programming Language :: Python :: Implementation :: PyPy',
        'Topic :: Internet :: Proxy Servers',
        'Topic :: Security :: Cryptography',
        ],
    install_requires=[
        'acme>=1.0.0',
        'attrs>=21.3.0',
        'cryptography>=42.0.0',
        'eliot>=1.6.0',
        'idna>=2.8',
        'josepy>=1.1.0',
        'pem>=16.1.0',
        'pyopenssl>=17.1.0',
        'treq>=20.9.0',
        'twisted[tls]>=20.3.0',
        'txsni',
        'zope.interface',
        ],
    extras_require={
        'test': [
            'hypothesis>=6.100.0',
            'service_identity>=18.1.0',
            ],
        },
    )
