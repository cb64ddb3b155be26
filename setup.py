from setuptools import find_packages, setup

setup(
    name="torchvslam",
    version="0.1.0",
    packages=find_packages(include=["torchvslam", "torchvslam.*"]),
    install_requires=[
        "torch>=1.10.0",
        "numpy>=1.20.0",
        "pyyaml>=5.4",
    ],
    extras_require={
        "test": [
            "pytest>=6.0",
            "opencv-python>=4.5.0",
        ],
    },
    description="A PyTorch-based feature frontend for visual SLAM",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
    ],
    python_requires=">=3.8",
)
