from setuptools import setup

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="netctrl",
    version="0.1.0",
    author="netctrl contributors",
    description="Block a process's network traffic or impair the whole host on Windows and Linux",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=["netctrl"],
    package_dir={"netctrl": "src"},
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX :: Linux",
        "Operating System :: Microsoft :: Windows",
    ],
    python_requires=">=3.7",
    install_requires=[
        "psutil>=5.9.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "netctrl=netctrl.cli:main",
        ],
    },
)
