from setuptools import setup, find_packages

setup(
    name='research_fastapi',
    version='0.1.0',
    packages=find_packages(exclude=['tests', 'tests.*']),
    include_package_data=True,
    install_requires=[
        'fastapi',
        'uvicorn[standard]',
        'httpx',
        'beautifulsoup4',
        'pydantic>=2',
        'pydantic-settings',
        'python-dotenv',
        'redis>=5',
        'openai>=1',
        'google-generativeai',
        'sse-starlette',
        'celery[redis]>=5.3',
        'kombu',
    ],
    extras_require={
        'test': [
            'pytest',
            'pytest-asyncio',
        ],
    },
    entry_points={
        'console_scripts': [
            'research-api=research_app.main:run',
        ],
    },
    author='Your Name',
    author_email='your.email@example.com',
    description='A FastAPI service that runs multi-phase open-web research jobs and synthesizes cited reports.',
    long_description=open('README.md').read(),
    long_description_content_type='text/markdown',
    url='https://github.com/your-repo/research_fastapi',
    classifiers=[
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'License :: OSI Approved :: MIT License',
        'Operating System :: OS Independent',
    ],
    python_requires='>=3.10',
)
