# setup.py
from setuptools import setup, find_packages
from pathlib import Path
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text(encoding="utf-8")

setup(
    name="macocr",
    version="0.5.0",
    package_dir={"": "src"},
    packages=find_packages(where="src", include=["macocr", "macocr.*"]),
    description="OCR images to text and per-line boxes, as a batch CLI or an HTTP service.",
    long_description=long_description,
    long_description_content_type='text/markdown',
    python_requires=">=3.9",

    install_requires=[
        "Pillow",
        "tqdm",
        "fastapi",
        "uvicorn",
        "python-multipart",
        "pydantic>=2",
    ],
    extras_require={
        "macos": [
            "pyobjc-framework-Vision; sys_platform == 'darwin'",
            "ocrmac; sys_platform == 'darwin'",
        ],
        "easyocr": ["easyocr", "torch", "torchvision", "numpy"],
        "tesseract": ["pytesseract"],
        "test": ["pytest", "httpx"],
    },
    entry_points={
        'console_scripts': [
            'macocr=macocr.cli:entry_point',
        ],
    },
)
