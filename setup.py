from setuptools import setup, find_packages

setup(
    name="inbox-rules-engine",
    version="0.1",
    package_dir={'': 'src'},
    packages=find_packages('src'),
    python_requires='>=3.10',
    install_requires=[
        'google-auth-oauthlib>=1.0.0',
        'google-auth-httplib2>=0.1.0',
        'google-api-python-client>=2.86.0',
        'SQLAlchemy>=2.0.19',
        'python-dateutil>=2.8.2',
        'python-dotenv>=1.0.0',
        'pydantic>=2.6.1',
        'structlog>=23.1.0',
        'requests>=2.31.0',
        'openai>=1.30.0',
        'fastapi>=0.110.0',
        'uvicorn>=0.29.0',
    ],
    extras_require={
        'test': [
            'pytest>=7.4.0',
            'httpx>=0.27.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'inbox-rules=inbox_rules.main:main',
        ],
    },
)
