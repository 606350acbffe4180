# migrations/__init__.py
