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
"""Test doubles: a fake CA speaking through a requests.Session interface."""

import base64
import configparser
import datetime
import json
import os
import shutil
import tempfile
import unittest

import requests
from requests.structures import CaseInsensitiveDict
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.x509.oid import NameOID

import acme_renew

CA = "https://ca.test"

_KEYS = {}

def key(name="default", bits=2048):
	if (name, bits) not in _KEYS:
		_KEYS[(name, bits)] = rsa.generate_private_key(public_exponent=65537, key_size=bits)
	return _KEYS[(name, bits)]

def write_key(path, private_key):
	with open(path, "wb") as f:
		f.write(private_key.private_bytes(serialization.Encoding.PEM,
			serialization.PrivateFormat.TraditionalOpenSSL, serialization.NoEncryption()))

def unb64(data):
	return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))

def make_cert(subject_key, hostnames, not_before, not_after, issuer_key=None, issuer="Fake Issuer"):
	subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, hostnames[0])])
	builder = x509.CertificateBuilder().subject_name(subject).issuer_name(
		x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, issuer)])
	).public_key(subject_key.public_key()).serial_number(x509.random_serial_number()
	).not_valid_before(not_before).not_valid_after(not_after)
	if len(hostnames) > 1 or "." in hostnames[0]:
		builder = builder.add_extension(x509.SubjectAlternativeName(
			[x509.DNSName(x) for x in hostnames]), critical=False)
	return builder.sign(issuer_key or subject_key, hashes.SHA256())

def write_cert(path, cert):
	with open(path, "wb") as f:
		f.write(cert.public_bytes(serialization.Encoding.PEM))

def write_config(path, hostnames, acl=None, **settings):
	config = configparser.ConfigParser(interpolation=None)
	config["acme"] = dict({ "ca": CA, "domain_key_length": "2048", "account_key_length": "2048" }, **settings)
	for hostname in hostnames:
		config[hostname] = { "acl": acl } if acl else {}
	with open(path, "w") as f:
		config.write(f)
	return path

def response(code=200, body=b"", headers=None):
	resp = requests.Response()
	resp.status_code = code
	if isinstance(body, (dict, list)):
		body = json.dumps(body).encode("utf8")
	elif isinstance(body, str):
		body = body.encode("utf8")
	resp._content = body
	resp.headers = CaseInsensitiveDict(headers or {})
	resp.encoding = "utf-8"
	return resp

class FakeCA:
	"""Verifies every signed request and answers like a v1 CA."""

	def __init__(self, webroots=None, statuses=("valid",)):
		self.webroots = webroots or {}
		self.statuses = list(statuses)
		self.reg_code = 201
		self.authz_code = 201
		self.authz_status = "pending"
		self.challenge_code = 202
		self.cert_headers = None
		self.issued = 0
		self.nonces = set()
		self.used = set()
		self.posts = []
		self.gets = []
		self.key_authorizations = {}
		self.issuer_key = key("issuer")
		now = datetime.datetime.now(datetime.timezone.utc)
		self.issuer_cert = make_cert(self.issuer_key, ["Fake Issuer"],
			now - datetime.timedelta(days=1), now + datetime.timedelta(days=3650))
		self.certs = {
			CA + "/acme/issuer-cert": self.issuer_cert.public_bytes(serialization.Encoding.DER),
		}

	def posted(self, suffix):
		return [payload for url, payload in self.posts if url.endswith(suffix)]

	def verify(self, data):
		envelope = json.loads(data.decode("utf8"))
		assert sorted(envelope) == ["header", "payload", "protected", "signature"]
		protected = json.loads(unb64(envelope["protected"]))
		nonce = protected["nonce"]
		assert nonce in self.nonces, "unknown nonce"
		assert nonce not in self.used, "nonce reused"
		self.used.add(nonce)

		jwk = envelope["header"]["jwk"]
		assert protected["jwk"] == jwk
		public_key = rsa.RSAPublicNumbers(
			int.from_bytes(unb64(jwk["e"]), "big"),
			int.from_bytes(unb64(jwk["n"]), "big")).public_key()
		public_key.verify(unb64(envelope["signature"]),
			"{0}.{1}".format(envelope["protected"], envelope["payload"]).encode("ascii"),
			padding.PKCS1v15(), hashes.SHA256())
		return json.loads(unb64(envelope["payload"]))

	def request(self, method, url, data=None, timeout=None, headers=None):
		if method == "HEAD" and url == CA + "/directory":
			nonce = "nonce-{0}".format(len(self.nonces))
			self.nonces.add(nonce)
			return response(200, headers={"Replay-Nonce": nonce})
		if method == "POST":
			payload = self.verify(data)
			self.posts.append((url, payload))
			return self.handle_post(url, payload)
		if method == "GET":
			self.gets.append(url)
			return self.handle_get(url)
		return response(405)

	def get(self, url, timeout=None):
		return self.request("GET", url, timeout=timeout)

	def handle_post(self, url, payload):
		if url == CA + "/acme/new-reg":
			return response(self.reg_code, { "detail": "Registration error" } if self.reg_code >= 400 else { "id": 1 },
				{ "Location": CA + "/acme/reg/1" })
		if url == CA + "/acme/new-authz":
			hostname = payload["identifier"]["value"]
			if self.authz_code != 201:
				return response(self.authz_code, { "type": "urn:acme:error:malformed", "detail": "Bad authz" })
			token = "token-" + hostname.replace(".", "_")
			return response(201, {
				"identifier": payload["identifier"],
				"status": self.authz_status,
				"challenges": [
					{ "type": "http-01", "token": token, "uri": CA + "/acme/challenge/" + hostname + "/1", "status": "pending" },
					{ "type": "dns-01", "token": token, "uri": CA + "/acme/challenge/" + hostname + "/2", "status": "pending" },
				],
			}, { "Location": CA + "/acme/authz/" + hostname })
		if url.startswith(CA + "/acme/challenge/"):
			self.key_authorizations[url] = payload["keyAuthorization"]
			return response(self.challenge_code, { "status": "pending", "uri": url })
		if url == CA + "/acme/new-cert":
			return self.new_cert(payload)
		return response(404, { "detail": "Not found" })

	def new_cert(self, payload):
		csr = x509.load_der_x509_csr(unb64(payload["csr"]))
		names = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
		now = datetime.datetime.now(datetime.timezone.utc)
		cert = x509.CertificateBuilder().subject_name(csr.subject).issuer_name(
			self.issuer_cert.subject).public_key(csr.public_key()).serial_number(
			x509.random_serial_number()).not_valid_before(now).not_valid_after(
			now + datetime.timedelta(days=90)).add_extension(names, critical=False).sign(
			self.issuer_key, hashes.SHA256())
		self.issued += 1
		location = CA + "/acme/cert/{0}".format(self.issued)
		der = cert.public_bytes(serialization.Encoding.DER)
		self.certs[location] = der
		headers = self.cert_headers if self.cert_headers is not None else {
			"Location": location,
			"Link": '<{0}/acme/issuer-cert>;rel="up"'.format(CA),
		}
		return response(201, der, headers)

	def handle_get(self, url):
		if url.startswith(CA + "/acme/challenge/"):
			status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
			body = { "status": status, "uri": url }
			if status == "invalid":
				body["error"] = { "type": "urn:acme:error:unauthorized", "detail": "Invalid response from challenge" }
			return response(202, body)
		if url in self.certs:
			return response(200, self.certs[url])
		if url.startswith("http://"):
			hostname, _, path = url[len("http://"):].partition("/")
			token = path.rpartition("/")[2]
			webroot = self.webroots.get(hostname)
			if webroot and os.path.exists(os.path.join(webroot, token)):
				with open(os.path.join(webroot, token)) as f:
					return response(200, f.read())
		return response(404, "Not found")

class FakeResolver:
	def __init__(self, answers, nameservers=("192.0.2.53",)):
		self.answers = list(answers)
		self.ns = set(nameservers)
		self.queries = []

	def nameservers(self, zone_name):
		return set(self.ns)

	def txt(self, name, nameserver):
		self.queries.append((name, nameserver))
		if len(self.answers) > 1:
			return self.answers.pop(0)
		return self.answers[0]

class Clock:
	def __init__(self):
		self.sleeps = []

	def __call__(self, seconds):
		self.sleeps.append(seconds)

class TempDirTestCase(unittest.TestCase):
	def setUp(self):
		self.tempdir = tempfile.mkdtemp()

	def tearDown(self):
		shutil.rmtree(self.tempdir)

	def context(self, hostnames=("example.com",), **kwargs):
		settings = kwargs.pop("settings", {})
		webroot = os.path.join(self.tempdir, "webroot")
		acl = settings.pop("acl", webroot)
		config = write_config(os.path.join(self.tempdir, "acme.ini"), hostnames, acl, **settings)
		kwargs.setdefault("sleep", Clock())
		return acme_renew.RunContext.from_file(config, **kwargs)
