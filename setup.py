"""Install the document-store session package."""

from setuptools import setup, find_packages

setup(
    name='docsession',
    version='0.1.0',
    description='Server-side sessions locked through a shared document store',
    packages=find_packages(exclude=['*test*']),
    python_requires='>=3.8',
    install_requires=[
        "flask<3.1.3",
        "pymongo",
        "python-json-logger",
        "pytz",
        "sqlalchemy>=1.4",
    ],
    extras_require={
        'test': ['pytest', 'mypy'],
    },
    zip_safe=False
)
