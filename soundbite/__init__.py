# soundbite/__init__.py
"""
Keep this file minimal so 'soundbite' is always a proper package.

Do NOT import submodules here (e.g., don't import main).
Tests and runtime should import from 'soundbite.main' directly:
    from soundbite.main import create_app
And Uvicorn should use:
    uvicorn soundbite.main:create_app --factory
"""
