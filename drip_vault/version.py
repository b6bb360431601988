"""Drip Vault Meta information.
   Drip Vault keeps imported media encrypted at rest and hands it back
   a few items per day, in a shuffled but stable order.
"""
__title__ = 'drip_vault'
__description__ = (
   'Drip Vault keeps media encrypted at rest and releases it '
   'a few items per day behind a password.'
)
__version__ = '0.3.0'
__copyright__ = 'Copyright (c) 2023 Jesus Lara'
__author__ = 'Jesus Lara'
__author_email__ = 'jesuslarag@gmail.com'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/phenobarbital/drip-vault'
