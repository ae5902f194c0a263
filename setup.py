from setuptools import setup, find_packages

setup(
    name='gman',
    version='0.1.0',
    description='Fetch, cache, install and uninstall CI-built products',
    package_dir={'': 'src'},
    packages=find_packages(where='src'),
    python_requires='>=3.10',
    install_requires=[
        'aiohttp',
        'aiofiles',
        'packaging',
        'pick',
        'platformdirs',
        'PyYAML',
        'rich',
    ],
    extras_require={
        'test': [
            'pytest<9.1',
            'pytest-asyncio',
            'pytest-mock',
        ],
    },
    entry_points={
        'console_scripts': [
            'gman=gman.cli:main',
        ],
    },
    # Include other metadata as needed
)
