"""Build peermesh package."""
import setuptools

with open("README.md") as f:
    long_desc = f.read()

setuptools.setup(
    name="peermesh",
    version="0.1.0",
    description="WebRTC data channel mesh with perfect negotiation",
    long_description=long_desc,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: POSIX",
    ],
    python_requires=">=3.10",
    install_requires=[
        "aiohttp>=3.9",
        "aiortc>=1.9,<2",
        "click",
        "cryptography",
        "pydantic>=2",
        "pyee>=13",
        "tomli ; python_version<'3.11'",
        "tomli-w",
        "typing-extensions ; python_version<'3.11'",
        "websockets>=13",
    ],
    extras_require={
        "dev": [
            "pytest",
            "pytest-asyncio>=0.23",
            "uvloop ; sys_platform!='win32'",
        ],
    },
    entry_points={
        "console_scripts": [
            "peermesh=peermesh.run:cli",
        ],
    },
)
