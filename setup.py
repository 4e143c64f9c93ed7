import re

from setuptools import setup


def get_property(prop):
    result = re.search(
        rf'{prop}\s*=\s*[\'"]([^\'"]*)[\'"]',
        open("labbook/__init__.py").read(),
    )
    return result.group(1)


with open("README.md", encoding="utf-8") as infile:
    long_description = infile.read()


setup(
    name="labbook",
    version=get_property("__version__"),
    description="Reproducible, cache-aware BitFunnel experiment pipelines",
    keywords=["research", "experiment", "workflow", "bitfunnel"],
    long_description_content_type="text/markdown",
    long_description=long_description,
    python_requires=">=3.9",
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
        "Development Status :: 3 - Alpha",
        "Environment :: Console",
        "Intended Audience :: Science/Research",
    ],
    packages=["labbook"],
    entry_points={
        "console_scripts": [
            "labbook=labbook.cli:main",
        ]
    },
    install_requires=[
        "graphviz",
        "psutil",
        "rich",
        "argcomplete",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-mock",
        ]
    },
)
