"""Tests for foundry.codec module."""

from __future__ import annotations

import pytest

from foundry import codec
from foundry.conditions import mark_ready
from foundry.constants import METADATA_KEY, METADATA_NAMESPACE
from foundry.exceptions import EncodingError, MetadataPayloadError, MetadataWrapperError


class TestRoundTrip:
    def test_round_trip(self, sample_vm):
        mark_ready(sample_vm)
        sample_vm.set_domain_uuid("0b7b1e3e-55a5-4d5e-9f7a-3f2c9a6a1c11")
        assert codec.decode(codec.encode(sample_vm)) == sample_vm

    def test_round_trip_keeps_sub_second_times(self, sample_vm):
        mark_ready(sample_vm)
        decoded = codec.decode(codec.encode(sample_vm))
        assert decoded.status.conditions[0].last_transition_time == sample_vm.status.conditions[0].last_transition_time


class TestLayers:
    def test_wrapper_is_namespaced(self, sample_vm):
        xml = codec.encode(sample_vm)
        assert xml.startswith(f'<{METADATA_KEY}:vm xmlns:{METADATA_KEY}="{METADATA_NAMESPACE}">')

    def test_payload_is_yaml(self, sample_vm):
        payload = codec.unwrap(codec.encode(sample_vm))
        assert "apiVersion: foundry.cofront.xyz/v1alpha1" in payload
        assert "memoryGiB: 4" in payload

    def test_payload_round_trip(self, sample_vm):
        assert codec.decode_payload(codec.encode_payload(sample_vm)) == sample_vm


class TestErrors:
    def test_malformed_xml_is_wrapper_error(self):
        with pytest.raises(MetadataWrapperError):
            codec.decode("<foundry:vm")

    def test_foreign_element_is_wrapper_error(self):
        with pytest.raises(MetadataWrapperError, match="unexpected metadata element"):
            codec.decode('<vm xmlns="http://example.com/other">x</vm>')

    def test_bad_yaml_is_payload_error(self):
        xml = codec.wrap("spec: [unterminated")
        with pytest.raises(MetadataPayloadError):
            codec.decode(xml)

    def test_wrong_shape_is_payload_error(self):
        with pytest.raises(MetadataPayloadError):
            codec.decode(codec.wrap("spec:\n  vcpus: lots\n"))

    def test_scalar_document_is_payload_error(self):
        with pytest.raises(MetadataPayloadError, match="not a mapping"):
            codec.decode_payload("just a string")

    def test_both_layers_are_encoding_errors(self):
        assert issubclass(MetadataWrapperError, EncodingError)
        assert issubclass(MetadataPayloadError, EncodingError)
        assert not issubclass(MetadataWrapperError, MetadataPayloadError)
