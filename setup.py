from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="longport-mcp",
    version="1.0.0",
    author="LongPort MCP Development",
    description="LongPort OpenAPI MCP server for trading, real-time quotes and portfolio queries",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Financial and Insurance Industry",
        "Topic :: Office/Business :: Financial :: Investment",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires=">=3.10",
    install_requires=[
        "mcp>=1.10.0,<2",
        "longport>=2.0.0",
        "pydantic>=2.0.0",
        "python-dotenv>=1.0.0",
        "starlette>=0.27.0",
        "uvicorn>=0.29.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "httpx>=0.25.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "longport-mcp=longport_mcp.cli:main",
        ],
    },
)
