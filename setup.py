from setuptools import setup, find_packages
import re
from pathlib import Path


def read_readme():
    this_directory = Path(__file__).parent
    readme_file = this_directory / 'README.md'
    if readme_file.exists():
        return readme_file.read_text(encoding='utf-8')
    return ""

def get_version():
    init_file = Path(__file__).parent / 'tenantdb' / '__init__.py'
    if init_file.exists():
        match = re.search(r'__version__\s*=\s*["\']([^"\']+)["\']', init_file.read_text())
        if match:
            return match.group(1)
    return "0.1.0"


setup(
    name="tenantdb",
    version=get_version(),
    description="Transactional PostgreSQL access and schema migrations for multi-tenant services.",
    long_description=read_readme(),
    long_description_content_type='text/markdown',
    packages=find_packages(include=['tenantdb', 'tenantdb.*']),
    package_data={
        '': ['*.md', '*.yaml'],
    },
    include_package_data=True,
    python_requires=">=3.11",
    install_requires=[
        "psycopg[binary]>=3.1",
        "psycopg-pool>=3.2",
        "pydantic>=2.0",
        "PyYAML>=6.0",
        "typer>=0.9",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.23",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Software Development :: Libraries :: Python Modules",
        "Topic :: Database",
    ],
    keywords="postgresql psycopg pool transactions row-level-security migrations",
    entry_points={
        'console_scripts': [
            'tenantdb=tenantdb.cli.command:cli',
        ],
    },
)
