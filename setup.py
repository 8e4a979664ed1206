"""
Setup script for backdrop.
"""

from setuptools import setup, find_packages

setup(
    name="backdrop",
    version="0.1.0",
    description="Person-segmentation background replacement for videos and still images",
    author="Videous Team",
    author_email="info@example.com",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    install_requires=[
        "av>=14.0",
        "mediapipe>=0.10.9",
        "numpy",
        "opencv-python",
        "PyYAML",
        "torch",
    ],
    extras_require={
        "test": ["pytest"],
    },
    python_requires=">=3.9",
    entry_points={
        "console_scripts": [
            "backdrop=backdrop.cli:main",
        ],
    },
)
