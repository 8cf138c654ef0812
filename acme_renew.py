#!/usr/bin/env python3
# Copyright 2015  Daniel Roesler
# Copyright 2015-2018,2020-2021,2023,2025  Simon Arlott
#
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
#
# The above copyright notice and this permission notice shall be included in all
# copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.

import argparse
import base64
import binascii
import configparser
import datetime
import hashlib
import json
import logging
import logging.handlers
import os
import posixpath
import re
import shlex
import signal
import subprocess
import sys
import tempfile
import time
import traceback
from collections import namedtuple

import dns.exception
import dns.flags
import dns.message
import dns.name
import dns.query
import dns.rdatatype
import dns.resolver
import requests
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.x509.oid import NameOID

DEFAULT_CA = "https://acme-v01.api.letsencrypt.org"
#DEFAULT_CA = "https://acme-staging.api.letsencrypt.org"
DEFAULT_AGREEMENT = "https://letsencrypt.org/documents/LE-SA-v1.2-November-15-2017.pdf"

# request paths relative to the CA base URL, per protocol dialect
DIALECTS = {
	"v1": {
		"directory": "/directory",
		"new-reg": "/acme/new-reg",
		"new-authz": "/acme/new-authz",
		"new-cert": "/acme/new-cert",
	},
}

USER_AGENT = "acme-renew"
HTTP_TIMEOUT = 30

log = logging.getLogger(__name__)
log.addHandler(logging.StreamHandler())
log.setLevel(logging.INFO)

class AcmeError(Exception):
	pass

class ConfigurationError(AcmeError, ValueError):
	pass

class CryptoError(AcmeError, ValueError):
	pass

class TransportError(AcmeError, IOError):
	pass

class ProtocolError(AcmeError, ValueError):
	pass

class ValidationError(AcmeError, ValueError):
	pass

class DeploymentError(AcmeError, IOError):
	pass

class NothingToDo(Exception):
	"""The existing certificate is outside the renewal window."""

def _b64(b):
	return base64.urlsafe_b64encode(b).decode("utf8").replace("=", "")

def _int_bytes(value):
	# even number of hex digits or unhexlify rejects it
	value = "{0:x}".format(value)
	value = "0{0}".format(value) if len(value) % 2 else value
	return binascii.unhexlify(value)

def _canonical(data):
	return json.dumps(data, sort_keys=True, separators=(",", ":"))

def _utcnow():
	return datetime.datetime.now(datetime.timezone.utc)

def _detail(body):
	if isinstance(body, bytes):
		try:
			body = json.loads(base64.b64decode(body).decode("utf8"))
		except ValueError:
			return body.decode("utf8", "replace")
	if isinstance(body, dict):
		return body.get("detail", _canonical(body))
	return str(body)

def jwk(n, e):
	return {
		"e": _b64(_int_bytes(e)),
		"kty": "RSA",
		"n": _b64(_int_bytes(n)),
	}

def jwk_thumbprint(n, e):
	return _b64(hashlib.sha256(_canonical(jwk(n, e)).encode("utf8")).digest())

class AccountKey:
	def __init__(self, key):
		self.key = key
		self.alg = "RS256"
		numbers = key.public_key().public_numbers()
		self.jwk = jwk(numbers.n, numbers.e)
		self.thumbprint = jwk_thumbprint(numbers.n, numbers.e)

	def header(self):
		return { "alg": self.alg, "jwk": dict(self.jwk) }

	def sign(self, nonce, payload):
		payload64 = _b64(_canonical(payload).encode("utf8"))
		protected = self.header()
		protected["nonce"] = nonce
		protected64 = _b64(_canonical(protected).encode("utf8"))
		try:
			signature = self.key.sign("{0}.{1}".format(protected64, payload64).encode("ascii"),
				padding.PKCS1v15(), hashes.SHA256())
		except (TypeError, ValueError) as e:
			raise CryptoError("Error signing request: {0}".format(e))
		return {
			"header": self.header(),
			"protected": protected64,
			"payload": payload64,
			"signature": _b64(signature),
		}

def _write_file(path, data, mode=0o644):
	fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
	with os.fdopen(fd, "wb") as f:
		f.write(data)

def _read_key(path):
	try:
		with open(path, "rb") as f:
			key = serialization.load_pem_private_key(f.read(), password=None)
	except (OSError, ValueError, TypeError) as e:
		raise CryptoError("Unable to read key {0}: {1}".format(path, e))
	if not isinstance(key, rsa.RSAPrivateKey):
		raise CryptoError("Key {0} is not an RSA key".format(path))
	return key

def generate_key(path, bits):
	log.info("Generating {0} bit key {1}...".format(bits, path))
	try:
		key = rsa.generate_private_key(public_exponent=65537, key_size=bits)
	except ValueError as e:
		raise CryptoError("Error generating key {0}: {1}".format(path, e))
	_write_file(path, key.private_bytes(serialization.Encoding.PEM,
		serialization.PrivateFormat.TraditionalOpenSSL, serialization.NoEncryption()), 0o600)
	return key

def load_account_key(path, bits):
	if os.path.exists(path):
		log.info("Reading account key...")
		key = _read_key(path)
	else:
		key = generate_key(path, bits)
	return AccountKey(key)

def load_domain_key(path, bits):
	if os.path.exists(path):
		log.info("Reading domain key {0}...".format(path))
		key = _read_key(path)
	else:
		key = generate_key(path, bits)

	if key.key_size != bits:
		raise CryptoError("Domain key {0} is {1} bits, expected {2}".format(path, key.key_size, bits))
	return key

def generate_csr(path, key, hostnames):
	log.info("Generating certificate request {0} for {1}...".format(path, ", ".join(hostnames)))
	csr = x509.CertificateSigningRequestBuilder().subject_name(
		x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, hostnames[0])])
	).add_extension(
		x509.SubjectAlternativeName([x509.DNSName(x) for x in hostnames]), critical=False
	).sign(key, hashes.SHA256())
	_write_file(path, csr.public_bytes(serialization.Encoding.PEM))
	return csr

def csr_names(csr):
	try:
		ext = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName)
	except x509.ExtensionNotFound:
		return []
	return ext.value.get_values_for_type(x509.DNSName)

def load_csr(path, key, hostnames):
	if not os.path.exists(path):
		return generate_csr(path, key, hostnames)

	try:
		with open(path, "rb") as f:
			csr = x509.load_pem_x509_csr(f.read())
	except (OSError, ValueError) as e:
		raise CryptoError("Unable to read certificate request {0}: {1}".format(path, e))

	names = csr_names(csr)
	if hostnames[0] not in names:
		raise CryptoError("Certificate request {0} does not cover {1}".format(path, hostnames[0]))

	if sorted(names) != sorted(hostnames):
		log.info("Certificate request names {0} differ from configuration".format(names))
		return generate_csr(path, key, hostnames)
	if csr.public_key().public_numbers() != key.public_key().public_numbers():
		log.info("Certificate request {0} does not match domain key".format(path))
		return generate_csr(path, key, hostnames)
	return csr

AcmeResponse = namedtuple("AcmeResponse", ["code", "body", "headers"])

class AcmeTransport:
	def __init__(self, ctx, account):
		self.ca = ctx.ca
		self.paths = DIALECTS[ctx.dialect]
		self.session = ctx.session
		self.account = account

	def url(self, resource):
		return self.ca + self.paths[resource]

	def _request(self, method, url, data=None):
		try:
			resp = self.session.request(method, url, data=data, timeout=HTTP_TIMEOUT,
				headers={"Content-Type": "application/jose+json", "User-Agent": USER_AGENT})
		except requests.RequestException as e:
			raise TransportError("Error contacting {0}: {1}".format(url, e))

		body = resp.content
		try:
			if body:
				body = json.loads(body.decode("utf8")) # try to parse json results
		except ValueError:
			pass
		return AcmeResponse(resp.status_code, body, resp.headers)

	def nonce(self):
		_, _, headers = self._request("HEAD", self.url("directory"))
		nonce = headers.get("Replay-Nonce")
		if not nonce:
			raise TransportError("No Replay-Nonce returned by {0}".format(self.url("directory")))
		log.debug("Obtained new nonce " + nonce)
		return nonce

	def post(self, url, payload):
		envelope = self.account.sign(self.nonce(), payload)
		return self._request("POST", url, json.dumps(envelope).encode("utf8"))

	def get(self, url):
		return self._request("GET", url)

	@staticmethod
	def link(headers, rel):
		for link in requests.utils.parse_header_links(headers.get("Link", "")):
			if link.get("rel") == rel:
				return link["url"]
		return None

	def register(self, email, agreement):
		log.info("Registering account...")
		reg = { "resource": "new-reg", "agreement": agreement }
		if email:
			reg["contact"] = ["mailto:" + email]
		code, result, headers = self.post(self.url("new-reg"), reg)

		if code == 409:
			log.info("Existing account " + str(headers.get("Location", "")))
		elif not code or code == 201:
			log.info("Registered account " + str(headers.get("Location", "")))
		else:
			raise ProtocolError("Error registering: {0} {1}".format(code, _detail(result)))

class ChallengeHandler:
	def __init__(self, ctx, hostname, data, account):
		self.ctx = ctx
		self.hostname = hostname
		self.type = data["type"]
		self.uri = data["uri"]
		self.token = re.sub(r"[^A-Za-z0-9_\-]", "_", data["token"])
		self.keyauthorization = "{0}.{1}".format(self.token, account.thumbprint)
		self.published = False

	def __enter__(self):
		return self

	def __exit__(self, type, value, traceback):
		if type is None:
			self.retract()
			return

		# keep the original error
		try:
			self.retract()
		except AcmeError as e:
			log.error("Unable to remove {0} challenge for {1}: {2}".format(self.type, self.hostname, e))

	def publish(self):
		raise NotImplementedError

	def retract(self):
		pass

class Http01ChallengeHandler(ChallengeHandler):
	def __init__(self, ctx, hostname, data, account, tmpdir):
		super().__init__(ctx, hostname, data, account)
		self.sink = parse_location(ctx.acl[hostname], ctx.transfer)
		self.token_path = os.path.join(tmpdir, self.token)

	def publish(self):
		with open(self.token_path, "w") as token_file:
			token_file.write(self.keyauthorization)
		self.sink.put(self.token_path, self.token)
		self.published = True

		# check that the file is in place
		wellknown_url = "http://{0}/.well-known/acme-challenge/{1}".format(self.hostname, self.token)
		try:
			resp = self.ctx.session.get(wellknown_url, timeout=HTTP_TIMEOUT)
		except requests.RequestException as e:
			raise ValidationError("Wrote file to {0}, but couldn't download {1}: {2}".format(
				self.sink, wellknown_url, e))
		if resp.status_code != 200 or resp.text.strip() != self.keyauthorization:
			raise ValidationError("Wrote file to {0}, but {1} returned {2} {3!r}".format(
				self.sink, wellknown_url, resp.status_code, resp.text[:100]))

	def retract(self):
		if self.published:
			self.published = False
			self.sink.remove(self.token)
		if os.path.exists(self.token_path):
			os.remove(self.token_path)

class Dns01ChallengeHandler(ChallengeHandler):
	def __init__(self, ctx, hostname, data, account, tmpdir=None):
		super().__init__(ctx, hostname, data, account)
		self.zone_name = "_acme-challenge." + hostname + "."
		self.txt_value = _b64(hashlib.sha256(self.keyauthorization.encode("utf8")).digest())

	def _hook(self, cmd):
		argv = shlex.split(cmd) + [self.hostname, self.txt_value]
		try:
			output = subprocess.check_output(argv).decode("utf8")
		except (OSError, subprocess.CalledProcessError) as e:
			raise ValidationError("DNS hook {0!r} failed: {1}".format(cmd, e))
		if output:
			log.info("Hook: " + output.strip())

	def _propagated(self, nameservers):
		success = False
		failed = False
		for ns in nameservers:
			log_message = "Query " + ns + " "
			try:
				values = self.ctx.resolver.txt(self.zone_name, ns)
			except OSError:
				# Ignore unreachable errors
				log.info(log_message + "Error")
				continue
			except dns.exception.DNSException:
				log.info(log_message + "Timeout")
				continue

			log.debug(log_message + "TXT " + repr(values))
			if self.txt_value in values:
				log.info(log_message + "OK")
				success = True
			else:
				log.info(log_message + "Missing")
				failed = True
		return success and not failed

	def publish(self):
		log.debug("Adding {0} TXT {1}".format(self.zone_name, self.txt_value))
		self._hook(self.ctx.dns_add_cmd)
		self.published = True

		try:
			nameservers = self.ctx.resolver.nameservers(self.zone_name)
		except dns.exception.DNSException as e:
			self.retract()
			raise ValidationError("Unable to find nameservers for {0}: {1}".format(self.zone_name, e))

		attempts = 0
		while attempts < self.ctx.dns_attempts:
			if attempts:
				log.info("Retrying")
				self.ctx.sleep(self.ctx.dns_delay)
			attempts = attempts + 1
			if self._propagated(nameservers):
				return

		self.retract()
		raise ValidationError("TXT record {0} not visible on {1} after {2} attempts".format(
			self.zone_name, ", ".join(sorted(nameservers)) or "any nameserver", attempts))

	def retract(self):
		if self.published:
			self.published = False
			self._hook(self.ctx.dns_del_cmd)

CHALLENGE_TYPES = {
	"http-01": Http01ChallengeHandler,
	"dns-01": Dns01ChallengeHandler,
}

class DnsResolver:
	def __init__(self, timeout=5):
		self.timeout = timeout

	def _addresses(self, hostname):
		addresses = set()
		for rdtype in ("A", "AAAA"):
			try:
				for rdata in dns.resolver.resolve(hostname, rdtype):
					addresses.add(str(rdata))
			except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
				pass
		return addresses

	def nameservers(self, zone_name):
		name = dns.name.from_text(zone_name)
		ns = set()
		while True:
			try:
				resp = dns.resolver.resolve(name, "NS")
				if resp.rrset.name != name:
					name = name.parent()
					continue

				for hostname in [str(x) for x in resp]:
					ns.update(self._addresses(hostname))
				break
			except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
				name = name.parent()

		return ns

	def txt(self, name, nameserver):
		q = dns.message.make_query(name, "TXT")
		q.flags &= ~dns.flags.RD
		m = dns.query.udp(q, nameserver, timeout=self.timeout)
		values = []
		for rrset in m.answer:
			for rdata in rrset:
				if rdata.rdtype == dns.rdatatype.TXT:
					values.append(b"".join(rdata.strings).decode("us-ascii", "replace"))
		return values

class RemoteTransfer:
	def __init__(self, ssh="ssh", scp="scp"):
		self.ssh = ssh
		self.scp = scp

	def _call(self, argv):
		log.debug("Running " + " ".join(argv))
		try:
			subprocess.run(argv, check=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
		except subprocess.CalledProcessError as e:
			raise DeploymentError("{0} failed: {1}".format(argv[0], e.stderr.decode("utf8", "replace").strip()))
		except OSError as e:
			raise DeploymentError("{0} failed: {1}".format(argv[0], e))

	def copy(self, src, host, path):
		self._call([self.scp, "-q", "-o", "BatchMode=yes", src, "{0}:{1}".format(host, path)])

	def run(self, host, argv):
		self._call([self.ssh, "-o", "BatchMode=yes", host, " ".join(shlex.quote(x) for x in argv)])

class LocalSink:
	def __init__(self, path):
		self.path = path

	def __str__(self):
		return self.path

	def ensure(self):
		try:
			os.makedirs(self.path, exist_ok=True)
		except OSError as e:
			raise DeploymentError("Unable to create {0}: {1}".format(self.path, e))

	def put(self, src, name, mode=0o644):
		self.ensure()
		dest = os.path.join(self.path, name)
		try:
			with open(src, "rb") as f:
				data = f.read()
			fd = os.open(dest, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
			# an existing file keeps its old mode
			os.fchmod(fd, mode)
			with os.fdopen(fd, "wb") as f:
				f.write(data)
		except OSError as e:
			raise DeploymentError("Unable to copy {0} to {1}: {2}".format(src, self.path, e))

	def remove(self, name):
		try:
			os.remove(os.path.join(self.path, name))
		except FileNotFoundError:
			pass
		except OSError as e:
			raise DeploymentError("Unable to remove {0} from {1}: {2}".format(name, self.path, e))

class RemoteSink:
	def __init__(self, host, path, transfer):
		self.host = host
		self.path = path
		self.transfer = transfer

	def __str__(self):
		return "{0}:{1}".format(self.host, self.path)

	def ensure(self):
		self.transfer.run(self.host, ["mkdir", "-p", self.path])

	def put(self, src, name, mode=None):
		self.ensure()
		dest = posixpath.join(self.path, name)
		self.transfer.copy(src, self.host, dest)
		if mode is not None:
			self.transfer.run(self.host, ["chmod", "{0:o}".format(mode), dest])

	def remove(self, name):
		self.transfer.run(self.host, ["rm", "-f", posixpath.join(self.path, name)])

def parse_location(value, transfer):
	host, sep, path = value.partition(":")
	if sep and host and "/" not in host:
		return RemoteSink(host, path, transfer)
	return LocalSink(os.path.expanduser(value))

class RunContext:
	def __init__(self, config, basedir, session=None, resolver=None, transfer=None, sleep=time.sleep, now=_utcnow):
		if not config.has_section("acme"):
			raise ConfigurationError("No [acme] section in configuration")
		acme = config["acme"]

		self.hostnames = [x for x in config.sections() if x != "acme"]
		self.acl = { hostname: config[hostname].get("acl") for hostname in self.hostnames }

		self.ca = acme.get("ca", DEFAULT_CA).rstrip("/")
		self.dialect = acme.get("dialect", "v1")
		self.agreement = acme.get("agreement", DEFAULT_AGREEMENT)
		self.email = acme.get("email")
		self.workdir = os.path.join(basedir, os.path.expanduser(acme.get("workdir", ".")))
		self.challenge = acme.get("challenge", "http-01")
		self.dns_add_cmd = acme.get("dns_add_cmd")
		self.dns_del_cmd = acme.get("dns_del_cmd")
		self.cert_dest = acme.get("cert_dest")
		self.key_dest = acme.get("key_dest")
		self.chain_dest = acme.get("chain_dest")
		self.fullchain_dest = acme.get("fullchain_dest")
		self.reload_cmd = acme.get("reload_cmd")
		try:
			self.account_key_length = acme.getint("account_key_length", 4096)
			self.domain_key_length = acme.getint("domain_key_length", 4096)
			self.renew_days = acme.getint("renew_days", 30)
			self.fullchain = acme.getboolean("fullchain", False) or bool(self.fullchain_dest)
		except ValueError as e:
			raise ConfigurationError("Invalid [acme] setting: {0}".format(e))

		self.poll_interval = 5
		self.max_polls = None
		self.dns_attempts = 5
		self.dns_delay = 2

		self.session = session if session is not None else requests.Session()
		self.resolver = resolver if resolver is not None else DnsResolver()
		self.transfer = transfer if transfer is not None else RemoteTransfer()
		self.sleep = sleep
		self.now = now

	@classmethod
	def from_file(cls, config_file, **kwargs):
		config = configparser.ConfigParser(interpolation=None)
		try:
			with open(config_file, "r") as f:
				config.read_file(f)
		except (OSError, configparser.Error) as e:
			raise ConfigurationError("Unable to read {0}: {1}".format(config_file, e))
		return cls(config, os.path.dirname(os.path.abspath(config_file)), **kwargs)

	@property
	def primary(self):
		return self.hostnames[0]

	@property
	def domain_dir(self):
		return os.path.join(self.workdir, self.primary)

	@property
	def account_key_path(self):
		return os.path.join(self.workdir, "account.key")

	@property
	def key_path(self):
		return os.path.join(self.domain_dir, self.primary + ".key")

	@property
	def csr_path(self):
		return os.path.join(self.domain_dir, self.primary + ".csr")

	@property
	def cert_path(self):
		return os.path.join(self.domain_dir, self.primary + ".crt")

	@property
	def chain_path(self):
		return os.path.join(self.domain_dir, "chain.crt")

	@property
	def fullchain_path(self):
		return os.path.join(self.domain_dir, "fullchain.pem")

	def check(self):
		if not self.hostnames:
			raise ConfigurationError("No hostnames defined")
		if self.dialect not in DIALECTS:
			raise ConfigurationError("Unknown protocol dialect: " + self.dialect)
		if self.challenge not in CHALLENGE_TYPES:
			raise ConfigurationError("Unknown challenge type: " + self.challenge)

		if self.challenge == "http-01":
			missing = [hostname for hostname in self.hostnames if not self.acl[hostname]]
			if missing:
				raise ConfigurationError("No acl configured for {0}".format(", ".join(missing)))
		elif not (self.dns_add_cmd and self.dns_del_cmd):
			raise ConfigurationError("dns-01 requires dns_add_cmd and dns_del_cmd")

		if not os.path.isdir(self.workdir):
			raise ConfigurationError("Working directory {0} does not exist".format(self.workdir))
		try:
			os.makedirs(self.domain_dir, mode=0o700, exist_ok=True)
		except OSError as e:
			raise ConfigurationError("Unable to create {0}: {1}".format(self.domain_dir, e))

def authorize(ctx, transport, hostname, tmpdir):
	log.info("Verifying {0}...".format(hostname))
	code, authorisation, _ = transport.post(transport.url("new-authz"), {
		"resource": "new-authz",
		"identifier": { "type": "dns", "value": hostname },
	})
	if code != 201 or not isinstance(authorisation, dict):
		raise ProtocolError("Error requesting authorisation for {0}: {1} {2}".format(
			hostname, code, _detail(authorisation)))

	if authorisation.get("status") == "valid":
		log.info("Already authorised {0}".format(hostname))
		return

	log.info("Need to authorise {0} using {1}".format(hostname,
		repr([challenge.get("type") for challenge in authorisation.get("challenges", [])])))
	for challenge in authorisation.get("challenges", []):
		if challenge.get("type") == ctx.challenge:
			break
	else:
		raise ProtocolError("No {0} challenge offered for {1}".format(ctx.challenge, hostname))

	with CHALLENGE_TYPES[ctx.challenge](ctx, hostname, challenge, transport.account, tmpdir) as handler:
		handler.publish()
		log.info("Prepared for challenge {0}".format(handler.type))

		# notify challenge are met
		code, result, _ = transport.post(handler.uri, {
			"resource": "challenge",
			"keyAuthorization": handler.keyauthorization,
		})
		if code != 202:
			raise ProtocolError("Error triggering challenge for {0}: {1} {2}".format(
				hostname, code, _detail(result)))
		log.debug("Challenge: {0}".format(repr(result)))

		wait_for_challenge(ctx, transport, handler)

	log.info("Verified {0}".format(hostname))

def wait_for_challenge(ctx, transport, handler):
	polls = 0
	while True:
		_, challenge_status, _ = transport.get(handler.uri)
		status = challenge_status.get("status") if isinstance(challenge_status, dict) else None

		if status == "valid":
			return challenge_status
		elif status == "invalid":
			raise ValidationError("Challenge did not pass for {0}: {1}".format(
				handler.hostname, _detail(challenge_status.get("error", challenge_status))))
		elif status != "pending":
			raise ProtocolError("Unexpected challenge status for {0}: {1!r}".format(
				handler.hostname, challenge_status))

		polls = polls + 1
		if ctx.max_polls is not None and polls >= ctx.max_polls:
			raise ValidationError("Challenge for {0} still pending after {1} checks".format(
				handler.hostname, polls))
		log.info("Challenge status: pending")
		ctx.sleep(ctx.poll_interval)

def authorize_all(ctx, transport):
	with tempfile.TemporaryDirectory(prefix="tmp.", dir=ctx.domain_dir) as tmpdir:
		for hostname in ctx.hostnames:
			authorize(ctx, transport, hostname, tmpdir)

def _read_certificate(path):
	try:
		with open(path, "rb") as f:
			return x509.load_pem_x509_certificate(f.read())
	except (OSError, ValueError) as e:
		raise CryptoError("Unable to read certificate {0}: {1}".format(path, e))

def check_renewal(ctx):
	if not os.path.exists(ctx.cert_path):
		return None

	cert = _read_certificate(ctx.cert_path)
	not_after = cert.not_valid_after_utc
	if ctx.now() + datetime.timedelta(days=ctx.renew_days) < not_after:
		raise NothingToDo("Certificate {0} is valid until {1:%Y-%m-%d}, not renewing".format(
			ctx.cert_path, not_after))
	log.info("Certificate {0} expires {1:%Y-%m-%d}, renewing".format(ctx.cert_path, not_after))
	return cert

def backup_name(ctx, cert):
	return os.path.join(ctx.domain_dir, "{0}-{1:%Y%m%d}-{2:%Y%m%d}.crt".format(
		ctx.primary, cert.not_valid_before_utc, cert.not_valid_after_utc))

def _pem(data, what):
	try:
		if data.startswith(b"-----BEGIN"):
			cert = x509.load_pem_x509_certificate(data)
		else:
			cert = x509.load_der_x509_certificate(data)
	except ValueError as e:
		raise ProtocolError("Invalid {0}: {1}".format(what, e))
	return cert.public_bytes(serialization.Encoding.PEM).decode("ascii")

def fetch_certificate(transport, url, what):
	code, data, headers = transport.get(url)
	if code != 200 or not isinstance(data, bytes) or not data:
		raise ProtocolError("Error downloading {0} from {1}: {2} {3}".format(what, url, code, _detail(data)))
	return _pem(data, what), headers

def issue(ctx, transport, csr):
	log.info("Signing certificate...")
	code, result, headers = transport.post(transport.url("new-cert"), {
		"resource": "new-cert",
		"csr": _b64(csr.public_bytes(serialization.Encoding.DER)),
	})
	location = headers.get("Location")
	if not location:
		raise ProtocolError("Error signing certificate: {0} {1}".format(code, _detail(result)))

	cert, cert_headers = fetch_certificate(transport, location, "certificate")
	log.info("Certificate signed")

	up = transport.link(headers, "up") or transport.link(cert_headers, "up")
	if not up:
		raise TransportError("No issuer link returned for certificate " + location)
	chain, _ = fetch_certificate(transport, up, "issuer certificate")
	return cert, chain

def write_certificate(ctx, cert, chain, previous=None):
	if previous is not None and os.path.exists(ctx.cert_path):
		backup = backup_name(ctx, previous)
		log.info("Moving old certificate to {0}".format(backup))
		os.rename(ctx.cert_path, backup)

	_write_file(ctx.cert_path, cert.encode("ascii"))
	_write_file(ctx.chain_path, chain.encode("ascii"))
	if ctx.fullchain:
		_write_file(ctx.fullchain_path, (cert + chain).encode("ascii"))
	log.info("Wrote {0}".format(ctx.cert_path))

def deploy(ctx):
	artifacts = [
		(ctx.cert_dest, ctx.cert_path, 0o644),
		(ctx.key_dest, ctx.key_path, 0o600),
		(ctx.chain_dest, ctx.chain_path, 0o644),
		(ctx.fullchain_dest, ctx.fullchain_path, 0o644),
	]
	for dest, path, mode in artifacts:
		if not dest:
			continue
		sink = parse_location(dest, ctx.transfer)
		log.info("Deploying {0} to {1}".format(os.path.basename(path), sink))
		sink.put(path, os.path.basename(path), mode)

	if ctx.reload_cmd:
		try:
			output = subprocess.check_output(ctx.reload_cmd, shell=True).decode("utf8")
		except (OSError, subprocess.CalledProcessError) as e:
			raise DeploymentError("Reload command failed: {0}".format(e))
		if output:
			log.info("Reload: " + output.strip())

def run(ctx, deploy_artifacts=True):
	ctx.check()
	previous = check_renewal(ctx)

	account = load_account_key(ctx.account_key_path, ctx.account_key_length)
	domain_key = load_domain_key(ctx.key_path, ctx.domain_key_length)
	csr = load_csr(ctx.csr_path, domain_key, ctx.hostnames)

	transport = AcmeTransport(ctx, account)
	transport.register(ctx.email, ctx.agreement)
	authorize_all(ctx, transport)

	cert, chain = issue(ctx, transport, csr)
	write_certificate(ctx, cert, chain, previous)

	if deploy_artifacts:
		deploy(ctx)

def _terminate(signum, frame):
	raise SystemExit("Terminated by signal {0}".format(signum))

def main(argv=None):
	parser = argparse.ArgumentParser(description="issue, renew and deploy a certificate using ACME")
	parser.add_argument("--config", required=True, help="path to your certificate configuration file")
	parser.add_argument("--quiet", action="store_const", const=logging.ERROR, help="suppress output except for errors")
	parser.add_argument("--verbose", action="store_const", const=logging.DEBUG, help="increase verbosity of output")
	parser.add_argument("--syslog", help="log to syslog with name")
	parser.add_argument("--no-deploy", action="store_true", help="do not copy files to their destinations or reload")

	args = parser.parse_args(argv)
	log.setLevel(args.verbose or args.quiet or log.level)

	if args.syslog:
		handler = logging.handlers.SysLogHandler("/dev/log")
		handler.setFormatter(logging.Formatter(args.syslog + ": %(levelname)s %(message)s"))
		log.addHandler(handler)

	signal.signal(signal.SIGTERM, _terminate)

	try:
		run(RunContext.from_file(args.config), deploy_artifacts=not args.no_deploy)
	except NothingToDo as e:
		log.info(str(e))
	except AcmeError as e:
		log.critical(str(e))
		return 1
	return 0

def cli():
	try:
		code = main(sys.argv[1:])
	except SystemExit:
		raise
	except Exception:
		for line in traceback.format_exc().strip().split("\n"):
			log.critical(line)
		raise
	sys.stdout.flush()
	sys.stderr.flush()
	sys.exit(code)

if __name__ == "__main__":
	cli()
