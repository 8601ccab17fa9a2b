"""
Enveloped XML Digital Signature for KSeF Session Requests

Signs the subtree located by an XPath expression and appends the
ds:Signature element as the last child of that same element. The
algorithm follows the key type (RSA-SHA256 or ECDSA-SHA256), with
SHA-256 reference digests.

Requirements:
    pip install signxml cryptography lxml
"""

import logging

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from lxml import etree
from signxml import XMLSigner, SignatureConstructionMethod, SignatureMethod, DigestAlgorithm

from ksef_errors import SigningError

logger = logging.getLogger(__name__)


class XmlSigner:
    """
    Stateless XML-DSig signer.

    Usage:
        signed = XmlSigner().sign(
            document=xml_bytes,
            reference_path="//*[local-name()='InitSessionRequest']",
            private_key=pem_bytes
        )
    """

    def sign(self, document: bytes, reference_path: str, private_key: bytes) -> bytes:
        """
        Sign the element at reference_path.

        Args:
            document: XML document bytes
            reference_path: XPath expression selecting exactly one element
            private_key: PEM-encoded private key (unencrypted)

        Returns:
            UTF-8 XML bytes of the full document with the signature attached

        Raises:
            SigningError: On malformed XML, missing path, or bad key
        """
        root = self._parse(document)
        target = self._locate(root, reference_path)
        key = self._load_key(private_key)

        # Sign a standalone copy so the reference covers exactly the subtree.
        standalone = etree.fromstring(etree.tostring(target))
        signer = XMLSigner(
            method=SignatureConstructionMethod.enveloped,
            signature_algorithm=self._signature_method(key),
            digest_algorithm=DigestAlgorithm.SHA256,
        )
        try:
            signed_subtree = signer.sign(standalone, key=key)
        except Exception as e:
            raise SigningError(f"Could not compute XML signature: {e}") from e

        if target is root:
            root = signed_subtree
        else:
            target.getparent().replace(target, signed_subtree)

        logger.debug(f"Signed XML element {etree.QName(signed_subtree).localname}")
        return etree.tostring(root, xml_declaration=True, encoding="UTF-8")

    @staticmethod
    def _parse(document: bytes) -> etree._Element:
        if isinstance(document, str):
            document = document.encode("utf-8")
        try:
            parser = etree.XMLParser(remove_blank_text=True)
            return etree.fromstring(document, parser=parser)
        except (etree.XMLSyntaxError, ValueError) as e:
            raise SigningError(f"Document is not well-formed XML: {e}") from e

    @staticmethod
    def _locate(root: etree._Element, reference_path: str) -> etree._Element:
        try:
            matches = root.xpath(reference_path)
        except etree.XPathError as e:
            raise SigningError(f"Invalid reference path {reference_path!r}: {e}") from e

        elements = [m for m in matches if isinstance(m, etree._Element)] if isinstance(matches, list) else []
        if not elements:
            raise SigningError(f"Reference element not found: {reference_path}")
        return elements[0]

    @staticmethod
    def _load_key(private_key: bytes):
        if isinstance(private_key, str):
            private_key = private_key.encode("utf-8")
        try:
            key = serialization.load_pem_private_key(private_key, password=None)
        except (ValueError, TypeError) as e:
            raise SigningError(f"Private key is malformed or encrypted: {e}") from e

        if not isinstance(key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
            raise SigningError(f"Unsupported private key type: {type(key).__name__}")
        return key

    @staticmethod
    def _signature_method(key) -> SignatureMethod:
        if isinstance(key, ec.EllipticCurvePrivateKey):
            return SignatureMethod.ECDSA_SHA256
        return SignatureMethod.RSA_SHA256
