import os.path

import setuptools

root_dir = os.path.abspath(os.path.dirname(__file__))
readme_file = os.path.join(root_dir, "README.rst")
with open(readme_file, encoding="utf-8") as f:
    long_description = f.read()

install_requires = [
    "aiohttp>=3.9",
    "aiortc>=1.9.0",
    "multidict",
    "pyee>=13.0.0",
    "yarl",
]

setuptools.setup(
    name="aiowhip",
    version="0.1.0",
    description="WHIP (WebRTC-HTTP ingestion protocol) publisher for asyncio",
    long_description=long_description,
    long_description_content_type="text/x-rst",
    license="BSD",
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Environment :: Console",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: BSD License",
        "Operating System :: OS Independent",
        "Programming Language :: Python",
        "Programming Language :: Python :: 3",
        "Topic :: Multimedia :: Video",
    ],
    package_dir={"": "src"},
    packages=["aiowhip"],
    python_requires=">=3.10",
    install_requires=install_requires,
    extras_require={
        "dev": ["coverage[toml]>=7.2.2", "mypy"],
    },
    entry_points={
        "console_scripts": ["whip-client=aiowhip.cli:main"],
    },
)
