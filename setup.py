from setuptools import setup

version = "0.3.0"


with open("README.md") as readme:
    long_description = readme.read()

setup(
    name="strobecam",
    version=version,
    description="Synchronize a UDP-controlled light with a camera stream for ambient-cancelling frame pairs",
    long_description=long_description,
    long_description_content_type="text/markdown",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Intended Audience :: Science/Research",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3.9",
        "Topic :: Multimedia :: Graphics :: Capture :: Digital Camera",
        "Topic :: Scientific/Engineering :: Image Processing",
    ],
    packages=["strobecam"],
    python_requires=">=3.9",
    install_requires=[
        "numpy",
        "pillow",
    ],
    extras_require={
        "test": ["pytest"],
    },
)
