import pytest

from dae_lib.dae_parser import Library

IDENTITY_16 = "1 0 0 0 0 1 0 0 0 0 1 0 0 0 0 1"

RIG_DAE = """<?xml version="1.0" encoding="utf-8"?>
<COLLADA xmlns="http://www.collada.org/2005/11/COLLADASchema" version="1.4.1">
  <library_geometries>
    <geometry id="Quad-mesh" name="Quad">
      <mesh>
        <source id="Quad-positions">
          <float_array id="Quad-positions-array" count="12">0 0 0 1 0 0 1 1 0 0 1 0</float_array>
          <technique_common>
            <accessor source="#Quad-positions-array" count="4" stride="3">
              <param name="X" type="float"/>
              <param name="Y" type="float"/>
              <param name="Z" type="float"/>
            </accessor>
          </technique_common>
        </source>
        <source id="Quad-normals">
          <float_array id="Quad-normals-array" count="3">0 0 1</float_array>
          <technique_common>
            <accessor source="#Quad-normals-array" count="1" stride="3">
              <param name="X" type="float"/>
              <param name="Y" type="float"/>
              <param name="Z" type="float"/>
            </accessor>
          </technique_common>
        </source>
        <source id="Quad-map">
          <float_array id="Quad-map-array" count="8">0 0 1 0 1 1 0 1</float_array>
          <technique_common>
            <accessor source="#Quad-map-array" count="4" stride="2">
              <param name="S" type="float"/>
              <param name="T" type="float"/>
            </accessor>
          </technique_common>
        </source>
        <vertices id="Quad-vertices">
          <input semantic="POSITION" source="#Quad-positions"/>
        </vertices>
        <triangles material="Skin-material" count="2">
          <input semantic="VERTEX" source="#Quad-vertices" offset="0"/>
          <input semantic="NORMAL" source="#Quad-normals" offset="1"/>
          <input semantic="TEXCOORD" source="#Quad-map" offset="2" set="0"/>
          <p>0 0 0 1 0 1 2 0 2 0 0 0 2 0 2 3 0 3</p>
        </triangles>
      </mesh>
    </geometry>
  </library_geometries>
  <library_controllers>
    <controller id="Quad-skin" name="QuadSkin">
      <skin source="#Quad-mesh">
        <bind_shape_matrix>BIND_SHAPE</bind_shape_matrix>
        <source id="Quad-skin-joints">
          <Name_array id="Quad-skin-joints-array" count="3">BoneA BoneB BoneC</Name_array>
          <technique_common>
            <accessor source="#Quad-skin-joints-array" count="3" stride="1">
              <param name="JOINT" type="name"/>
            </accessor>
          </technique_common>
        </source>
        <source id="Quad-skin-bind_poses">
          <float_array id="Quad-skin-bind_poses-array" count="48">IDENTITY IDENTITY IDENTITY</float_array>
          <technique_common>
            <accessor source="#Quad-skin-bind_poses-array" count="3" stride="16">
              <param name="TRANSFORM" type="float4x4"/>
            </accessor>
          </technique_common>
        </source>
        <source id="Quad-skin-weights">
          <float_array id="Quad-skin-weights-array" count="4">1.0 0.75 0.25 0.5</float_array>
          <technique_common>
            <accessor source="#Quad-skin-weights-array" count="4" stride="1">
              <param name="WEIGHT" type="float"/>
            </accessor>
          </technique_common>
        </source>
        <joints>
          <input semantic="JOINT" source="#Quad-skin-joints"/>
          <input semantic="INV_BIND_MATRIX" source="#Quad-skin-bind_poses"/>
        </joints>
        <vertex_weights count="4">
          <input semantic="JOINT" source="#Quad-skin-joints" offset="0"/>
          <input semantic="WEIGHT" source="#Quad-skin-weights" offset="1"/>
          <vcount>1 2 2 1</vcount>
          <v>0 0 0 1 1 2 1 2 2 1 2 0</v>
        </vertex_weights>
      </skin>
    </controller>
  </library_controllers>
  <library_animations>
    <animation id="BoneB_anim">
      <source id="BoneB_anim-input">
        <float_array id="BoneB_anim-input-array" count="2">0 1</float_array>
        <technique_common>
          <accessor source="#BoneB_anim-input-array" count="2" stride="1">
            <param name="TIME" type="float"/>
          </accessor>
        </technique_common>
      </source>
      <source id="BoneB_anim-output">
        <float_array id="BoneB_anim-output-array" count="32">1 0 0 0 0 1 0 1 0 0 1 0 0 0 0 1 1 0 0 0 0 1 0 2 0 0 1 0 0 0 0 1</float_array>
        <technique_common>
          <accessor source="#BoneB_anim-output-array" count="2" stride="16">
            <param name="TRANSFORM" type="float4x4"/>
          </accessor>
        </technique_common>
      </source>
      <source id="BoneB_anim-interpolation">
        <Name_array id="BoneB_anim-interpolation-array" count="2">LINEAR LINEAR</Name_array>
        <technique_common>
          <accessor source="#BoneB_anim-interpolation-array" count="2" stride="1">
            <param name="INTERPOLATION" type="name"/>
          </accessor>
        </technique_common>
      </source>
      <sampler id="BoneB_anim-sampler">
        <input semantic="INPUT" source="#BoneB_anim-input"/>
        <input semantic="OUTPUT" source="#BoneB_anim-output"/>
        <input semantic="INTERPOLATION" source="#BoneB_anim-interpolation"/>
      </sampler>
      <channel source="#BoneB_anim-sampler" target="BoneB/transform"/>
    </animation>
    <animation id="Action">
      <animation id="BoneC_anim">
        <source id="BoneC_anim-input">
          <float_array id="BoneC_anim-input-array" count="1">2.5</float_array>
          <technique_common>
            <accessor source="#BoneC_anim-input-array" count="1" stride="1">
              <param name="TIME" type="float"/>
            </accessor>
          </technique_common>
        </source>
        <source id="BoneC_anim-output">
          <float_array id="BoneC_anim-output-array" count="16">IDENTITY</float_array>
          <technique_common>
            <accessor source="#BoneC_anim-output-array" count="1" stride="16">
              <param name="TRANSFORM" type="float4x4"/>
            </accessor>
          </technique_common>
        </source>
        <sampler id="BoneC_anim-sampler">
          <input semantic="INPUT" source="#BoneC_anim-input"/>
          <input semantic="OUTPUT" source="#BoneC_anim-output"/>
        </sampler>
        <channel source="#BoneC_anim-sampler" target="BoneC/transform"/>
      </animation>
    </animation>
  </library_animations>
  <library_visual_scenes>
    <visual_scene id="Scene" name="Scene">
      <node id="Quad" name="Quad" type="NODE">
        <translate sid="location">1 2 3</translate>
        <instance_geometry url="#Quad-mesh"/>
      </node>
      <node id="Armature" name="Armature" type="NODE">
        <translate>0 0 1</translate>
        <node id="BoneA" name="BoneA" sid="BoneA" type="JOINT">
          <translate>0 1 0</translate>
          <node id="BoneB" name="BoneB" sid="BoneB" type="JOINT">
            <translate>0 1 0</translate>
            <node id="BoneC" name="BoneC" sid="BoneC" type="JOINT">
              <rotate>0 0 1 90</rotate>
              <translate>0 1 0</translate>
            </node>
          </node>
        </node>
      </node>
      <node id="Skinned" name="Skinned" type="NODE">
        <instance_controller url="#Quad-skin">
          <skeleton>#SKELETON</skeleton>
        </instance_controller>
      </node>
    </visual_scene>
  </library_visual_scenes>
  <scene>
    <instance_visual_scene url="#Scene"/>
  </scene>
</COLLADA>
"""

SOURCES_FRAGMENT = """<?xml version="1.0" encoding="utf-8"?>
<mesh>
  <source id="position">
    <float_array id="values" count="30">
      1 2 3 4 5 6 7 8 9 10 11 12 13 14 15 16 17 18 19 20 21 22 23 24 25 26 27 28 29 30
    </float_array>
    <technique_common>
      <accessor source="#values" count="3" stride="10">
        <param name="X" type="float"/>
        <param name="Y" type="float"/>
        <param name="Z" type="float"/>
      </accessor>
    </technique_common>
  </source>
  <source id="normal">
    <technique_common>
      <accessor source="#values" offset="3" count="3" stride="10">
        <param name="X" type="float"/>
        <param name="Y" type="float"/>
        <param name="Z" type="float"/>
      </accessor>
    </technique_common>
  </source>
  <source id="mapping">
    <technique_common>
      <accessor source="#values" offset="6" count="3" stride="10">
        <param name="S" type="float"/>
        <param name="T" type="float"/>
      </accessor>
    </technique_common>
  </source>
  <triangles count="1">
    <input semantic="POSITION" source="#position" offset="0"/>
    <input semantic="NORMAL" source="#normal" offset="0"/>
    <input semantic="TEXCOORD" source="#mapping" offset="0"/>
    <p>0 1 2</p>
  </triangles>
</mesh>
"""


def rig_document(bind_shape=IDENTITY_16, skeleton="BoneA"):
    return (
        RIG_DAE.replace("BIND_SHAPE", bind_shape)
        .replace("IDENTITY", IDENTITY_16)
        .replace("#SKELETON", "#" + skeleton)
    )


@pytest.fixture
def rig_library():
    return Library.from_string(rig_document())
