"""Registry services over the SQLite store.

Every function takes an ``AsyncSession`` from ``Store.session()`` and
commits its own write.
"""
