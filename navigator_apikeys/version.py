"""Navigator API Keys Meta information.
   Navigator API Keys stores, rotates, permission-gates and monitors
   the credentials used to call third-party services.
"""
__title__ = 'navigator_apikeys'
__description__ = (
   'Navigator API Keys stores, rotates, permission-gates and monitors '
   'third-party API credentials.'
)
__version__ = '0.3.0'
__copyright__ = 'Copyright (c) 2023 Jesus Lara'
__author__ = 'Jesus Lara'
__author_email__ = 'jesuslarag@gmail.com'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/phenobarbital/navigator-apikeys'
