from setuptools import setup, find_packages

setup(
    name="chatquota",
    version="0.1.0",
    packages=find_packages(include=["chatquota", "chatquota.*"]),
    python_requires=">=3.11",
    install_requires=[
        "fastapi>=0.110",
        "starlette>=0.36",
        "pydantic>=2.6",
        "pydantic-settings>=2.2",
        "redis>=5.0",
        "tiktoken>=0.6",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "httpx>=0.27",
        ],
    },
)
