''' _exceptions.py - module specific exceptions

Copyright (c) 2022 Netherlands Forensic Institute - MIT License
'''

class TpsException(Exception):
    ''' base class for all exceptions raised by this package '''
    pass


class NotATpsFileException(TpsException):
    ''' raised when the file header is not a (decrypted) TPS header '''
    pass


class MalformedException(TpsException):
    ''' raised when a structure violates the rules of the file format '''
    pass


class RunLengthException(MalformedException):
    ''' raised when a compressed page can not be expanded '''
    pass


class OutOfRangeException(TpsException, IndexError):
    ''' raised when a read would cross the boundary of a region '''
    pass


class UnsupportedException(TpsException):
    ''' raised when a field type is not supported '''
    pass


class IncompleteException(TpsException):
    ''' raised when a multi-part record set misses one or more parts '''
    pass


class DuplicateException(TpsException):
    ''' raised when two data records share the same record number '''
    pass


class InvalidArgumentException(TpsException):
    ''' raised when a function receives an invalid argument '''
    pass


class UserFeedbackException(TpsException):
    ''' raised when the user can fix the exception by providing different input '''
    pass


class CancelledException(TpsException):
    ''' raised when a key recovery run is cancelled '''
    pass
