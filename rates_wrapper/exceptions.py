'''Contains all exceptions used internally to rates_wrapper in a single
location with no internal dependencies. This makes it a lot easier to
avoid accidental circular imports in exception handling logic.
'''
import logging
import types

_MAX_BODY_CHARS = 200


class RatesWrapperException(Exception):
    '''The base class for all of our internal exceptions. You can catch
    this to handle all expected errors from within rates_wrapper;
    anything that would leak through that catch would be a
    rates_wrapper bug.
    '''


class PartnerUnavailable(RatesWrapperException):
    '''Raised when we fail to get usable data out of *any* partner. This
    is what recovery code (for example, the stale-fallback cache) should
    be catching.
    '''


class PartnerApiFailure(PartnerUnavailable):
    '''A catchall error raised when a call to the exchange rate partner
    fails, or succeeds but hands back something we can't trust: a
    non-200, a body that isn't JSON, a payload missing the fields we
    asked for, a rate that makes no sense, etc.

    We deliberately don't subclass this any further. The partner's
    failure modes are poorly documented, and callers almost never want
    to handle "missing field" differently from "500". What they *do*
    want is enough context to reproduce the call, which is why the
    endpoint and params travel with the exception.
    '''

    def __init__(
        self, endpoint, params=None, *, status_code=None, body=None,
        reason=None
    ):
        super().__init__(endpoint, params, status_code, body, reason)
        self.endpoint = endpoint
        self.params = types.MappingProxyType(dict(params or {}))
        self.status_code = status_code
        self.body = body
        self.reason = reason
        self._logged = False

    def __str__(self):
        parts = [f'{self.endpoint} params={dict(self.params)!r}']
        if self.status_code is not None:
            parts.append(f'status={self.status_code}')
        if self.reason:
            parts.append(f'reason={self.reason}')
        if self.body:
            body = self.body
            if isinstance(body, (bytes, bytearray)):
                body = bytes(body).decode('utf-8', errors='replace')
            if len(body) > _MAX_BODY_CHARS:
                body = body[:_MAX_BODY_CHARS] + '...'
            parts.append(f'body={body!r}')

        return 'Partner request failed: ' + ', '.join(parts)

    @property
    def logged(self):
        return self._logged

    def log_once(self, logger, level=logging.ERROR):
        '''Log this failure (with traceback) unless somebody already
        did. Returns True if we actually emitted a record.

        The whole point is that a failure gets exactly one log record,
        no matter how many layers it passes through on its way up.
        '''
        if self._logged:
            return False

        self._logged = True
        logger.log(level, '%s', self, exc_info=self)
        return True
