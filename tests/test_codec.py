"""
Tests for the SOCKS5 and HTTP wire codec.
"""

import base64

import pytest

from proxy_relay.core.exceptions import (
    AuthRejectedError,
    MalformedError,
    NoHostError,
    TruncatedError,
    UnsupportedMethodError,
)
from proxy_relay.core.lib.codec import (
    CONNECT_ESTABLISHED,
    AuthMethod,
    BufferReader,
    basic_auth_header,
    build_forward_request,
    decode_socks5_auth_reply,
    decode_socks5_greeting,
    decode_socks5_greeting_reply,
    decode_socks5_reply,
    encode_address,
    encode_http_connect_request,
    encode_socks5_auth,
    encode_socks5_connect_request,
    encode_socks5_greeting,
    encode_socks5_reply,
    extract_host_port,
    http_error_response,
    origin_form,
    parse_http_request_line,
    parse_http_status,
    rewrite_request_for_upstream,
    split_head,
    split_host_port,
)
from proxy_relay.core.models import TargetAddress


def lines_of(raw: bytes) -> list[str]:
    return split_head(raw)[0]


# ── SOCKS5 ───────────────────────────────────────────────────────────────────

class TestSocks5Greeting:
    """Client greeting and server method selection."""

    def test_greeting_without_credentials(self):
        assert encode_socks5_greeting(needs_auth=False) == b"\x05\x01\x00"

    def test_greeting_with_credentials(self):
        assert encode_socks5_greeting(needs_auth=True) == b"\x05\x02\x00\x02"

    def test_reply_no_auth(self):
        assert decode_socks5_greeting_reply(b"\x05\x00") is AuthMethod.NO_AUTH

    def test_reply_user_pass(self):
        assert decode_socks5_greeting_reply(b"\x05\x02") is AuthMethod.USERNAME_PASSWORD

    def test_reply_no_acceptable_method(self):
        with pytest.raises(UnsupportedMethodError) as exc:
            decode_socks5_greeting_reply(b"\x05\xff")
        assert exc.value.method == 0xFF

    def test_reply_bad_version(self):
        with pytest.raises(MalformedError):
            decode_socks5_greeting_reply(b"\x04\x00")

    def test_reply_truncated(self):
        with pytest.raises(TruncatedError):
            decode_socks5_greeting_reply(b"\x05")

    def test_server_side_greeting(self):
        assert decode_socks5_greeting(BufferReader(b"\x05\x02\x00\x02")) == (0, 2)

    def test_server_side_zero_methods(self):
        with pytest.raises(MalformedError):
            decode_socks5_greeting(BufferReader(b"\x05\x00"))

    def test_server_side_wrong_version(self):
        with pytest.raises(MalformedError):
            decode_socks5_greeting(BufferReader(b"\x04\x01\x00"))


class TestSocks5Auth:
    """RFC 1929 username/password sub-negotiation."""

    def test_encode(self):
        assert encode_socks5_auth("u", "p") == b"\x01\x01u\x01p"

    def test_encode_empty_password(self):
        assert encode_socks5_auth("user", "") == b"\x01\x04user\x00"

    def test_encode_too_long(self):
        with pytest.raises(ValueError):
            encode_socks5_auth("x" * 256, "p")

    def test_reply_success(self):
        decode_socks5_auth_reply(b"\x01\x00")

    def test_reply_rejected(self):
        with pytest.raises(AuthRejectedError):
            decode_socks5_auth_reply(b"\x01\x01")

    def test_reply_empty(self):
        with pytest.raises(AuthRejectedError):
            decode_socks5_auth_reply(b"")


class TestSocks5Connect:
    """CONNECT requests and replies."""

    def test_domain_target(self):
        frame = encode_socks5_connect_request(TargetAddress("example.com", 443))
        assert frame == b"\x05\x01\x00\x03\x0bexample.com\x01\xbb"

    def test_ipv4_target(self):
        frame = encode_socks5_connect_request(TargetAddress("10.0.0.1", 80))
        assert frame == b"\x05\x01\x00\x01\x0a\x00\x00\x01\x00\x50"

    def test_ipv6_target(self):
        frame = encode_socks5_connect_request(TargetAddress("::1", 22))
        assert frame[:4] == b"\x05\x01\x00\x04"
        assert frame[4:20] == b"\x00" * 15 + b"\x01"
        assert frame[20:] == b"\x00\x16"

    def test_domain_too_long(self):
        with pytest.raises(MalformedError):
            encode_address("a" * 256)

    def test_success_reply_bytes(self):
        assert encode_socks5_reply(0) == b"\x05\x00\x00\x01\x00\x00\x00\x00\x00\x00"

    def test_decode_reply_consumes_exact_frame(self):
        reader = BufferReader(b"\x05\x00\x00\x01\x7f\x00\x00\x01\x04\x38" + b"payload")
        frame = decode_socks5_reply(reader)
        assert frame.succeeded
        assert frame.host == "127.0.0.1"
        assert frame.port == 1080
        assert reader.remaining == b"payload"

    def test_decode_domain_reply(self):
        reader = BufferReader(b"\x05\x00\x00\x03\x04host\x00\x50")
        frame = decode_socks5_reply(reader)
        assert frame.target == TargetAddress("host", 80)
        assert reader.remaining == b""

    def test_decode_failure_code(self):
        frame = decode_socks5_reply(BufferReader(b"\x05\x05\x00\x01\x00\x00\x00\x00\x00\x00"))
        assert not frame.succeeded
        assert frame.status == 0x05

    def test_decode_truncated(self):
        with pytest.raises(TruncatedError):
            decode_socks5_reply(BufferReader(b"\x05\x00\x00\x01\x7f\x00"))

    def test_decode_unknown_address_type(self):
        with pytest.raises(MalformedError):
            decode_socks5_reply(BufferReader(b"\x05\x00\x00\x09\x00\x00"))


# ── HTTP ─────────────────────────────────────────────────────────────────────

class TestRequestLine:
    """Request line parsing."""

    def test_parse(self):
        line = parse_http_request_line(b"GET / HTTP/1.1\r\nHost: a\r\n\r\n")
        assert (line.method, line.target, line.version) == ("GET", "/", "HTTP/1.1")
        assert not line.is_connect

    def test_connect(self):
        assert parse_http_request_line(b"CONNECT a:443 HTTP/1.1\r\n\r\n").is_connect

    def test_too_few_tokens(self):
        with pytest.raises(MalformedError):
            parse_http_request_line(b"GARBAGE\r\n\r\n")


class TestExtractHostPort:
    """Target discovery from a request head."""

    def test_connect_with_port(self):
        lines = lines_of(b"CONNECT example.com:8443 HTTP/1.1\r\nHost: other\r\n\r\n")
        assert extract_host_port(lines) == TargetAddress("example.com", 8443)

    def test_connect_without_port(self):
        assert extract_host_port(lines_of(b"CONNECT example.com HTTP/1.1\r\n\r\n")).port == 443

    def test_host_header_default_port(self):
        lines = lines_of(b"GET http://example.org/path HTTP/1.1\r\nHost: example.org\r\n\r\n")
        assert extract_host_port(lines) == TargetAddress("example.org", 80)

    def test_host_header_with_port(self):
        lines = lines_of(b"GET / HTTP/1.1\r\nhost: example.org:8080\r\n\r\n")
        assert extract_host_port(lines) == TargetAddress("example.org", 8080)

    def test_absolute_url_without_host_header(self):
        lines = lines_of(b"GET http://example.net:81/x HTTP/1.1\r\nAccept: */*\r\n\r\n")
        assert extract_host_port(lines) == TargetAddress("example.net", 81)

    def test_no_host(self):
        with pytest.raises(NoHostError):
            extract_host_port(lines_of(b"GET /path HTTP/1.1\r\nAccept: */*\r\n\r\n"))

    def test_bad_port(self):
        with pytest.raises(MalformedError):
            extract_host_port(lines_of(b"CONNECT example.com:http HTTP/1.1\r\n\r\n"))

    def test_bracketed_ipv6(self):
        assert split_host_port("[::1]:8080", 80) == ("::1", 8080)
        assert split_host_port("[::1]", 80) == ("::1", 80)

    def test_unparseable_absolute_url(self):
        with pytest.raises(MalformedError):
            extract_host_port(lines_of(b"GET http://[::1/path HTTP/1.1\r\n\r\n"))


class TestRewriteRequest:
    """Origin-form rewrite for requests carried through a SOCKS5 tunnel."""

    RAW = (
        b"GET http://example.org/path?q=1 HTTP/1.1\r\n"
        b"Host: example.org\r\n"
        b"Proxy-Connection: keep-alive\r\n"
        b"Proxy-Authorization: Basic eDp5\r\n"
        b"Accept: */*\r\n"
        b"\r\n"
    )

    def test_rewrite(self):
        out = rewrite_request_for_upstream(self.RAW, "example.org", 80)
        assert out == (
            b"GET /path?q=1 HTTP/1.1\r\n"
            b"Host: example.org\r\n"
            b"Accept: */*\r\n"
            b"Connection: close\r\n"
            b"\r\n"
        )

    def test_non_default_port_in_host(self):
        out = rewrite_request_for_upstream(self.RAW, "example.org", 8080)
        assert b"Host: example.org:8080\r\n" in out

    def test_missing_host_is_inserted(self):
        out = rewrite_request_for_upstream(b"GET http://a.test/ HTTP/1.1\r\nAccept: */*\r\n\r\n", "a.test", 80)
        assert lines_of(out)[1] == "Host: a.test"

    def test_connection_header_replaced(self):
        raw = b"GET / HTTP/1.1\r\nHost: a\r\nConnection: keep-alive\r\n\r\n"
        out = rewrite_request_for_upstream(raw, "a", 80)
        assert out.count(b"Connection:") == 1
        assert b"Connection: close" in out

    def test_credentials_added(self):
        out = rewrite_request_for_upstream(self.RAW, "example.org", 80, ("u", "p"))
        assert basic_auth_header("u", "p").encode() in out

    def test_body_prefix_carried(self):
        raw = b"POST http://a/ HTTP/1.1\r\nHost: a\r\nContent-Length: 4\r\n\r\nbody"
        assert rewrite_request_for_upstream(raw, "a", 80).endswith(b"\r\n\r\nbody")

    def test_unparseable_absolute_url(self):
        with pytest.raises(MalformedError):
            rewrite_request_for_upstream(b"GET http://[::1/path HTTP/1.1\r\nHost: a\r\n\r\n", "a", 80)

    def test_origin_form(self):
        assert origin_form("http://example.org") == "/"
        assert origin_form("http://example.org/a?b=1") == "/a?b=1"
        assert origin_form("/already") == "/already"

    def test_deterministic(self):
        assert rewrite_request_for_upstream(self.RAW, "example.org", 80) == rewrite_request_for_upstream(
            self.RAW, "example.org", 80
        )


class TestForwardRequest:
    """Absolute-form forwarding to an upstream HTTP proxy."""

    def test_absolute_url_kept_and_auth_added(self):
        raw = b"GET http://a.test/x HTTP/1.1\r\nHost: a.test\r\nProxy-Authorization: Basic old\r\n\r\n"
        out = build_forward_request(raw, TargetAddress("a.test", 80), ("u", "p"))
        lines = lines_of(out)
        assert lines[0] == "GET http://a.test/x HTTP/1.1"
        assert "Proxy-Authorization: Basic old" not in lines
        assert lines[-1] == "Proxy-Authorization: Basic " + base64.b64encode(b"u:p").decode()

    def test_origin_form_made_absolute(self):
        out = build_forward_request(b"GET /x HTTP/1.1\r\nHost: a.test:8080\r\n\r\n", TargetAddress("a.test", 8080))
        assert lines_of(out)[0] == "GET http://a.test:8080/x HTTP/1.1"

    def test_without_credentials(self):
        out = build_forward_request(b"GET http://a/ HTTP/1.1\r\nHost: a\r\n\r\n", TargetAddress("a", 80))
        assert b"Proxy-Authorization" not in out


class TestHttpResponses:
    """CONNECT request, status parsing and canned responses."""

    def test_connect_request(self):
        out = encode_http_connect_request(TargetAddress("example.com", 443))
        assert out == b"CONNECT example.com:443 HTTP/1.1\r\nHost: example.com:443\r\n\r\n"

    def test_connect_request_with_auth(self):
        out = encode_http_connect_request(TargetAddress("example.com", 443), ("u", "p"))
        assert b"Proxy-Authorization: Basic dTpw\r\n" in out

    def test_parse_status(self):
        assert parse_http_status(b"HTTP/1.1 200 Connection established") == 200
        assert parse_http_status(b"HTTP/1.0 407 Proxy Authentication Required\r\nX: y") == 407

    def test_parse_status_malformed(self):
        with pytest.raises(MalformedError):
            parse_http_status(b"SSH-2.0-OpenSSH")

    def test_error_response(self):
        assert http_error_response("502 Bad Gateway") == b"HTTP/1.1 502 Bad Gateway\r\nContent-Length: 0\r\n\r\n"

    def test_connect_established(self):
        assert CONNECT_ESTABLISHED == b"HTTP/1.1 200 Connection Established\r\n\r\n"
