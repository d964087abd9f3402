import os
import unittest
from unittest import mock

from curricore.core.config import ModelConfig
from curricore.core.llm import (
    CompletionConfigurationError,
    CompletionError,
    CompletionOptions,
    DSPyCompletionClient,
    StructuredCompletionClient,
    StructuredOutputError,
    build_completion_client,
    extract_json_payload,
    options_for_role,
)


class ExtractJsonPayloadTests(unittest.TestCase):
    def test_plain_and_fenced_json(self) -> None:
        self.assertEqual(extract_json_payload('{"a": 1}'), {"a": 1})
        self.assertEqual(extract_json_payload('Sure:\n```json\n{"a": [1, 2]}\n```\nDone.'), {"a": [1, 2]})
        self.assertEqual(extract_json_payload("[1, 2]"), [1, 2])

    def test_json_embedded_in_prose(self) -> None:
        self.assertEqual(extract_json_payload('Here you go: {"ok": true} hope that helps'), {"ok": True})

    def test_unparseable_reply_raises(self) -> None:
        with self.assertRaises(StructuredOutputError) as ctx:
            extract_json_payload("no json here")
        self.assertEqual(ctx.exception.raw_text, "no json here")
        with self.assertRaises(StructuredOutputError):
            extract_json_payload("   ")


class OptionsForRoleTests(unittest.TestCase):
    def test_role_settings_become_call_options(self) -> None:
        models = ModelConfig.model_validate({"extractor": {"model": "gpt-4o", "max_tokens": 8192}})
        options = options_for_role(models.extractor, default_max_tokens=4096)
        self.assertEqual(options, CompletionOptions(model="gpt-4o", temperature=0.3, max_tokens=8192))
        router = options_for_role(models.router, default_max_tokens=4096)
        self.assertEqual(router.max_tokens, 4096)
        self.assertEqual(router.temperature, 0.2)


class DSPyCompletionClientTests(unittest.TestCase):
    def setUp(self) -> None:
        self.model_cfg = ModelConfig.model_validate({})
        self.options = CompletionOptions(model="gpt-4o-mini", temperature=0.2, max_tokens=1024)

    @mock.patch("curricore.core.llm.dspy")
    def test_send_parses_reply_and_reports_usage(self, mock_dspy) -> None:
        lm = mock_dspy.LM.return_value
        lm.return_value = ['```json\n{"contentType": "survey"}\n```']
        lm.history = [{"usage": {"prompt_tokens": 40, "completion_tokens": 12}}]

        client = DSPyCompletionClient(self.model_cfg, api_key="sk-test")
        result = client.send("system", "user", self.options)
        client.send("system", "again", self.options)

        self.assertIsInstance(client, StructuredCompletionClient)
        self.assertEqual(result.data, {"contentType": "survey"})
        self.assertEqual(result.usage.total_tokens, 52)
        mock_dspy.LM.assert_called_once_with(model="openai/gpt-4o-mini", api_key="sk-test", max_tokens=4096)
        messages = lm.call_args_list[0].kwargs["messages"]
        self.assertEqual([message["role"] for message in messages], ["system", "user"])
        self.assertEqual(lm.call_args_list[0].kwargs["temperature"], 0.2)
        self.assertEqual(lm.call_args_list[0].kwargs["max_tokens"], 1024)

    @mock.patch("curricore.core.llm.dspy")
    def test_transport_failure_becomes_completion_error(self, mock_dspy) -> None:
        mock_dspy.LM.return_value.side_effect = RuntimeError("rate limited")
        client = DSPyCompletionClient(self.model_cfg, api_key="sk-test")
        with self.assertRaises(CompletionError) as ctx:
            client.send("system", "user", self.options)
        self.assertNotIsInstance(ctx.exception, StructuredOutputError)
        self.assertIn("rate limited", str(ctx.exception))

    @mock.patch("curricore.core.llm.dspy")
    def test_non_json_reply_is_structured_output_error(self, mock_dspy) -> None:
        mock_dspy.LM.return_value.return_value = ["I cannot help with that."]
        client = DSPyCompletionClient(self.model_cfg, api_key="sk-test")
        with self.assertRaises(StructuredOutputError):
            client.send("system", "user", self.options)

    @mock.patch("curricore.core.llm.dspy")
    def test_role_specific_api_key_env(self, mock_dspy) -> None:
        mock_dspy.LM.return_value.return_value = ['{"concepts": []}']
        cfg = ModelConfig.model_validate({"extractor": {"model": "gpt-4o", "api_key_env": "EXTRACTOR_KEY"}})
        with mock.patch.dict(os.environ, {"EXTRACTOR_KEY": "sk-extractor", "OPENAI_API_KEY": "sk-shared"}, clear=True):
            DSPyCompletionClient(cfg).send("system", "user", CompletionOptions(model="gpt-4o"))
            DSPyCompletionClient(cfg).send("system", "user", CompletionOptions(model="gpt-4o-mini"))

        extractor_kwargs = mock_dspy.LM.call_args_list[0].kwargs
        router_kwargs = mock_dspy.LM.call_args_list[1].kwargs
        self.assertEqual(extractor_kwargs["api_key"], "sk-extractor")
        self.assertEqual(router_kwargs["api_key"], "sk-shared")

    def test_missing_api_key_raises(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            client = DSPyCompletionClient(self.model_cfg)
            with self.assertRaises(CompletionConfigurationError):
                client.send("system", "user", self.options)

    @mock.patch("curricore.core.llm.dspy")
    def test_lm_construction_failure_becomes_completion_error(self, mock_dspy) -> None:
        mock_dspy.LM.side_effect = TypeError("unexpected keyword 'api_base'")
        client = DSPyCompletionClient(self.model_cfg, api_key="sk-test")
        with self.assertRaises(CompletionError) as ctx:
            client.send("system", "user", self.options)
        self.assertIsInstance(ctx.exception.__cause__, TypeError)

    def test_factory_checks_credentials_eagerly(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            with self.assertRaises(CompletionConfigurationError) as ctx:
                build_completion_client(self.model_cfg)
        self.assertIsInstance(ctx.exception, CompletionError)
        self.assertIn("OPENAI_API_KEY", str(ctx.exception))

    def test_factory_accepts_environment_key(self) -> None:
        with mock.patch.dict(os.environ, {"OPENAI_API_KEY": "sk-env"}, clear=True):
            client = build_completion_client(self.model_cfg)
        self.assertIsInstance(client, DSPyCompletionClient)


if __name__ == "__main__":
    unittest.main()
