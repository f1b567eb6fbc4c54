"""Build signalbox package."""
import setuptools

with open("README.md") as f:
    long_desc = f.read()

setuptools.setup(
    name="signalbox",
    version="0.1.0",
    author="Signalbox Developers",
    description="WebRTC signaling and negotiation over a polling relay",
    long_description=long_desc,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(include=["signalbox*"]),
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: Apache Software License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.10",
    install_requires=[
        "aiortc>=1.5.0",
        "aiosqlite>=0.17.0",
        "click>=8.0",
        "cryptography",
        "fastapi>=0.100.0",
        "pydantic>=2",
        "requests>=2.27.1",
        "tomli ; python_version<'3.11'",
        "tomli-w",
        "typing-extensions>=4.3.0 ; python_version<'3.11'",
        "uvicorn>=0.22.0",
    ],
    extras_require={
        "dev": [
            "httpx",
            "pytest>=7.0",
            "pytest-asyncio>=0.23.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "signalbox=signalbox.cli:cli",
            "signalbox-relay=signalbox.relay.run:cli",
        ],
    },
)
